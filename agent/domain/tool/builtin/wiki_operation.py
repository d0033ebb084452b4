"""Wiki operation tool: lets the model create, update and delete notes or run action notes"""

import json
from typing import Any, Dict, Literal, Optional, Protocol

import structlog
from pydantic import ConfigDict, Field

from domain.models.base import CamelModel
from domain.tool.builtin.wiki_search import ToolListPosition, WikiWorkspaceDirectory, find_workspace
from domain.tool.tool_definition import (
    ResponseHandlerContext, ToolDefinition, ToolHandlerContext, define_tool,
)
from domain.tool.tool_executor import ToolExecutionResult

logger = structlog.get_logger(__name__)

TOOL_ID = "wikiOperation"
OPERATION_TOOL = "wiki-operation"

ADD_TIDDLER = "wiki-add-tiddler"
SET_TIDDLER_TEXT = "wiki-set-tiddler-text"
DELETE_TIDDLER = "wiki-delete-tiddler"
INVOKE_ACTION = "invokeActionString"


class WikiOperationBackend(WikiWorkspaceDirectory, Protocol):
    """Storage the wiki operation tool writes to"""

    async def add_tiddler(self, workspace_id: str, title: str, text: str, fields: Dict[str, Any]) -> None: ...

    async def set_tiddler_text(self, workspace_id: str, title: str, text: str) -> None: ...

    async def delete_tiddler(self, workspace_id: str, title: str) -> bool: ...

    async def invoke_action(self, workspace_id: str, title: str, variables: Dict[str, Any]) -> bool: ...


class WikiOperationParameter(CamelModel):
    """Wiki operation configuration of an agent definition"""
    tool_list_position: Optional[ToolListPosition] = Field(
        None, description="Where the tool description is injected into the prompt"
    )
    tool_result_duration: int = Field(1, description="Rounds an operation result stays in the context")


class WikiOperationToolParameter(CamelModel):
    """Change a wiki workspace: add, update or delete a note, or run an action note"""
    model_config = ConfigDict(
        title=OPERATION_TOOL,
        json_schema_extra={
            "examples": [
                {"workspaceName": "My Wiki", "operation": ADD_TIDDLER, "title": "Example Note",
                 "text": "Example content"},
                {"workspaceName": "My Wiki", "operation": SET_TIDDLER_TEXT, "title": "Existing Note",
                 "text": "Updated content"},
                {"workspaceName": "My Wiki", "operation": DELETE_TIDDLER, "title": "Note to Delete"},
                {"workspaceName": "My Wiki", "operation": INVOKE_ACTION, "title": "SomeActionTiddler",
                 "variables": '{"status": "success"}'},
            ]
        },
    )

    workspace_name: str = Field(description="Name or id of the workspace")
    operation: Literal["wiki-add-tiddler", "wiki-set-tiddler-text", "wiki-delete-tiddler", "invokeActionString"]
    title: Optional[str] = Field(None, description="Title of the note, or of the action note to run")
    text: Optional[str] = Field(None, description="Note text for add and update")
    extra_meta: str = Field("{}", description="JSON object of extra fields for a new note")
    variables: str = Field("{}", description="JSON object of variables passed to an action note")


def _json_object(raw: str, name: str) -> Dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e.msg}") from e
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return value


async def run_wiki_operation(backend: WikiOperationBackend,
                             parameters: WikiOperationToolParameter) -> ToolExecutionResult:
    workspace, error = await find_workspace(backend, parameters.workspace_name)
    if workspace is None:
        return ToolExecutionResult(success=False, error=error)

    operation = parameters.operation
    title = parameters.title
    if not title:
        return ToolExecutionResult(success=False, error=f"title is required for {operation}")

    logger.debug("Executing wiki operation", workspace_id=workspace.id, operation=operation, title=title)
    try:
        if operation == ADD_TIDDLER:
            await backend.add_tiddler(workspace.id, title, parameters.text or "",
                                      _json_object(parameters.extra_meta, "extraMeta"))
            message = f'Added note "{title}" to "{workspace.name}"'
        elif operation == SET_TIDDLER_TEXT:
            await backend.set_tiddler_text(workspace.id, title, parameters.text or "")
            message = f'Updated the text of note "{title}" in "{workspace.name}"'
        elif operation == DELETE_TIDDLER:
            if not await backend.delete_tiddler(workspace.id, title):
                return ToolExecutionResult(success=False, error=f'Note "{title}" not found in "{workspace.name}"')
            message = f'Deleted note "{title}" from "{workspace.name}"'
        else:
            variables = _json_object(parameters.variables, "variables")
            if not await backend.invoke_action(workspace.id, title, variables):
                return ToolExecutionResult(success=False,
                                           error=f'Action note "{title}" not found in "{workspace.name}"')
            message = f'Ran action note "{title}" in "{workspace.name}"'
    except ValueError as e:
        return ToolExecutionResult(success=False, error=str(e))

    return ToolExecutionResult(
        success=True,
        data=message,
        metadata={"workspace_id": workspace.id, "workspace_name": workspace.name,
                  "operation": operation, "title": title},
    )


def create_wiki_operation_tool(backend: WikiOperationBackend) -> ToolDefinition:

    def inject_tool_list(context: ToolHandlerContext) -> None:
        position = context.config.tool_list_position
        if position is None:
            return
        context.inject_tool_list(target_id=position.target_id, position=position.position,
                                 caption="Wiki operation tool")

    async def handle_tool_call(context: ResponseHandlerContext) -> None:
        if context.tool_call is None or context.tool_call.tool_id != OPERATION_TOOL:
            return
        framework_context = context.agent_framework_context
        if framework_context.is_cancelled():
            logger.debug("Wiki operation skipped, turn cancelled", agent_id=framework_context.agent.id)
            return
        await context.execute_tool_call(OPERATION_TOOL, lambda params: run_wiki_operation(backend, params))

    return define_tool(
        tool_id=TOOL_ID,
        display_name="Wiki Operation",
        description="Create, update and delete notes in wiki workspaces",
        config_schema=WikiOperationParameter,
        llm_tool_schemas={OPERATION_TOOL: WikiOperationToolParameter},
        on_process_prompts=inject_tool_list,
        on_response_complete=handle_tool_call,
    )
