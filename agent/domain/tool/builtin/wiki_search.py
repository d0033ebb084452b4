"""Wiki search tool: lets the model query a wiki by filter or by embedding similarity"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple

import structlog
from pydantic import ConfigDict, Field

from domain.models.base import CamelModel
from domain.models.prompt import InjectPosition
from domain.tool.tool_definition import (
    ResponseHandlerContext, ToolDefinition, ToolHandlerContext, define_tool,
)
from domain.tool.tool_executor import ToolExecutionResult

logger = structlog.get_logger(__name__)

TOOL_ID = "wikiSearch"
SEARCH_TOOL = "wiki-search"
UPDATE_EMBEDDINGS_TOOL = "wiki-update-embeddings"


@dataclass
class WikiWorkspace:
    id: str
    name: str


class WikiWorkspaceDirectory(Protocol):
    async def list_workspaces(self) -> List[WikiWorkspace]: ...


class WikiSearchBackend(WikiWorkspaceDirectory, Protocol):
    """Storage the wiki search tool reads from"""

    async def run_filter(self, workspace_id: str, filter: str) -> List[str]: ...

    async def get_tiddler(self, workspace_id: str, title: str) -> Optional[Dict[str, Any]]: ...

    async def search_similar(self, workspace_id: str, query: str, ai_config: Dict[str, Any],
                             limit: int, threshold: float) -> List[Tuple[str, float]]: ...

    async def generate_embeddings(self, workspace_id: str, ai_config: Dict[str, Any],
                                  force_update: bool) -> Dict[str, Any]: ...


class ToolListPosition(CamelModel):
    target_id: str
    position: InjectPosition = InjectPosition.CHILD


class WikiSearchParameter(CamelModel):
    """Wiki search configuration of an agent definition"""
    source_type: Literal["wiki"] = "wiki"
    tool_list_position: Optional[ToolListPosition] = Field(
        None, description="Where the tool description is injected into the prompt"
    )
    tool_result_duration: int = Field(1, description="Rounds a search result stays in the context")


class WikiSearchToolParameter(CamelModel):
    """Search notes in a wiki workspace, by filter expression or by semantic similarity"""
    model_config = ConfigDict(
        title=SEARCH_TOOL,
        json_schema_extra={
            "examples": [
                {"workspaceName": "My Wiki", "searchType": "filter", "filter": "[tag[Example]]", "limit": 10},
                {"workspaceName": "My Wiki", "searchType": "vector", "query": "how to use agents", "limit": 5},
            ]
        },
    )

    workspace_name: str = Field(description="Name or id of the workspace to search")
    search_type: Literal["filter", "vector"] = Field("filter", description="filter or vector search")
    filter: Optional[str] = Field(None, description="Filter expression, required for filter search")
    query: Optional[str] = Field(None, description="Natural language query, required for vector search")
    limit: int = Field(10, description="Maximum number of results")
    threshold: float = Field(0.7, description="Minimum similarity for vector search")


class WikiUpdateEmbeddingsToolParameter(CamelModel):
    """Rebuild the embeddings of a wiki workspace so vector search sees recent edits"""
    model_config = ConfigDict(
        title=UPDATE_EMBEDDINGS_TOOL,
        json_schema_extra={"examples": [{"workspaceName": "My Wiki", "forceUpdate": False}]},
    )

    workspace_name: str = Field(description="Name or id of the workspace")
    force_update: bool = Field(False, description="Regenerate embeddings of unchanged notes too")


async def find_workspace(backend: WikiWorkspaceDirectory, workspace_name: str) -> Tuple[Optional[WikiWorkspace], str]:
    workspaces = await backend.list_workspaces()
    for workspace in workspaces:
        if workspace.name == workspace_name or workspace.id == workspace_name:
            return workspace, ""
    available = ", ".join(f"{workspace.name} ({workspace.id})" for workspace in workspaces)
    return None, f'Workspace "{workspace_name}" not found. Available workspaces: {available or "none"}'


def _format_results(results: List[Dict[str, Any]]) -> str:
    content = ""
    for result in results:
        content += f"**Tiddler: {result['title']}**"
        if result.get("similarity") is not None:
            content += f" (Similarity: {result['similarity'] * 100:.1f}%)"
        content += "\n\n"
        if result.get("text"):
            content += f"```tiddlywiki\n{result['text']}\n```\n\n"
        else:
            content += "(Content not available)\n\n"
    return content


async def search_wiki(backend: WikiSearchBackend, parameters: WikiSearchToolParameter,
                      ai_config: Optional[Dict[str, Any]] = None) -> ToolExecutionResult:
    workspace, error = await find_workspace(backend, parameters.workspace_name)
    if workspace is None:
        return ToolExecutionResult(success=False, error=error)

    metadata: Dict[str, Any] = {
        "workspace_id": workspace.id,
        "workspace_name": workspace.name,
        "search_type": parameters.search_type,
    }
    results: List[Dict[str, Any]] = []

    if parameters.search_type == "vector":
        if not parameters.query:
            return ToolExecutionResult(success=False, error="Vector search requires a query")
        if not ai_config:
            return ToolExecutionResult(success=False, error="Vector search requires an AI configuration")
        matches = await backend.search_similar(workspace.id, parameters.query, ai_config,
                                               parameters.limit, parameters.threshold)
        if not matches:
            return ToolExecutionResult(
                success=True,
                data=f'No notes in "{workspace.name}" are similar to "{parameters.query}" '
                     f"(threshold {parameters.threshold})",
                metadata={**metadata, "result_count": 0},
            )
        for title, similarity in matches:
            tiddler = await backend.get_tiddler(workspace.id, title) or {}
            results.append({"title": title, "text": tiddler.get("text"), "similarity": similarity})
        header = f'Found {len(results)} notes similar to "{parameters.query}"\n\n'
    else:
        if not parameters.filter:
            return ToolExecutionResult(success=False, error="Filter search requires a filter expression")
        titles = await backend.run_filter(workspace.id, parameters.filter)
        if not titles:
            return ToolExecutionResult(
                success=True,
                data=f'No notes in "{workspace.name}" match the filter {parameters.filter}',
                metadata={**metadata, "result_count": 0},
            )
        for title in titles[:parameters.limit]:
            tiddler = await backend.get_tiddler(workspace.id, title) or {}
            results.append({"title": title, "text": tiddler.get("text")})
        header = f"Found {len(titles)} notes, showing {len(results)}\n\n"

    return ToolExecutionResult(
        success=True,
        data=header + _format_results(results),
        metadata={**metadata, "result_count": len(results)},
    )


async def update_wiki_embeddings(backend: WikiSearchBackend, parameters: WikiUpdateEmbeddingsToolParameter,
                                 ai_config: Optional[Dict[str, Any]] = None) -> ToolExecutionResult:
    workspace, error = await find_workspace(backend, parameters.workspace_name)
    if workspace is None:
        return ToolExecutionResult(success=False, error=error)
    if not ai_config:
        return ToolExecutionResult(success=False, error="Updating embeddings requires an AI configuration")

    stats = await backend.generate_embeddings(workspace.id, ai_config, parameters.force_update)
    return ToolExecutionResult(
        success=True,
        data=(f'Embeddings updated for "{workspace.name}": {stats.get("total_embeddings", 0)} embeddings '
              f'across {stats.get("total_notes", 0)} notes'),
        metadata={"workspace_id": workspace.id, "force_update": parameters.force_update, **stats},
    )


def create_wiki_search_tool(backend: WikiSearchBackend) -> ToolDefinition:

    def inject_tool_list(context: ToolHandlerContext) -> None:
        position = context.config.tool_list_position
        if position is None:
            return
        context.inject_tool_list(target_id=position.target_id, position=position.position,
                                 caption="Wiki search tool")

    async def handle_tool_call(context: ResponseHandlerContext) -> None:
        if context.tool_call is None:
            return
        framework_context = context.agent_framework_context
        if framework_context.is_cancelled():
            logger.debug("Wiki search skipped, turn cancelled", agent_id=framework_context.agent.id)
            return

        ai_config = framework_context.provider_config or framework_context.agent.ai_api_config
        if context.tool_call.tool_id == SEARCH_TOOL:
            await context.execute_tool_call(SEARCH_TOOL, lambda params: search_wiki(backend, params, ai_config))
        elif context.tool_call.tool_id == UPDATE_EMBEDDINGS_TOOL:
            await context.execute_tool_call(
                UPDATE_EMBEDDINGS_TOOL, lambda params: update_wiki_embeddings(backend, params, ai_config)
            )

    return define_tool(
        tool_id=TOOL_ID,
        display_name="Wiki Search",
        description="Search wiki workspaces by filter or semantic similarity",
        config_schema=WikiSearchParameter,
        llm_tool_schemas={
            SEARCH_TOOL: WikiSearchToolParameter,
            UPDATE_EMBEDDINGS_TOOL: WikiUpdateEmbeddingsToolParameter,
        },
        on_process_prompts=inject_tool_list,
        on_response_complete=handle_tool_call,
    )
