"""Declarative tool definitions

A tool is described once with :func:`define_tool` and turned into a function
``tool(hooks)`` that taps the framework hooks it cares about. Callbacks get
handler contexts with the helpers they are allowed to use in that phase:

* ``processPrompts``: prompt lookup and injection (:class:`ToolHandlerContext`)
* ``responseComplete``: tool call execution and result messages
  (:class:`ResponseHandlerContext`), no prompt injection
* ``postProcess``: response tree edits (:class:`PostProcessHandlerContext`)
"""

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

import structlog
from pydantic import BaseModel

from domain.exceptions import ToolExecutionError, ToolValidationError
from domain.hooks.contexts import (
    AIResponseContext, AgentFrameworkContext, HookActions, PostProcessContext,
    PromptConcatHookContext, ToolCallInfo, ToolExecutionContext,
)
from domain.hooks.hook_registry import AgentFrameworkHooks, invoke_handler
from domain.models.agent import AgentInstanceMessage, ToolConfig, new_id
from domain.models.agent_state import MessageRole, YieldTarget
from domain.models.base import utc_now
from domain.models.prompt import AgentResponse, InjectPosition, PromptNode
from domain.prompt.prompt_tree import PromptLocation, find_prompt_by_id, insert_prompt
from domain.tool.response_pattern import ToolCallMatch, match_tool_calling
from domain.tool.schema_content import schema_to_tool_content
from domain.tool.tool_executor import ToolExecutionResult, ToolExecutor, ToolExecutorFn
from domain.tool.tool_validator import ToolParameterValidator
from infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

DEFAULT_RESULT_DURATION = 1
ERROR_RESULT_DURATION = 2

Callback = Callable[[Any], Union[None, Awaitable[None]]]


def format_tool_result(tool_name: str, parameters: Dict[str, Any], text: str, is_error: bool) -> str:
    label = "Error" if is_error else "Result"
    return (
        "<functions_result>\n"
        f"Tool: {tool_name}\n"
        f"Parameters: {json.dumps(parameters, ensure_ascii=False, default=str)}\n"
        f"{label}: {text}\n"
        "</functions_result>"
    )


def _result_text(result: ToolExecutionResult) -> str:
    if result.success:
        data = result.data
        if data is None:
            return "Success"
        return data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    return result.error or "Unknown error"


class _BaseHandlerContext:

    def __init__(
        self,
        definition: "ToolDefinition",
        config: Optional[BaseModel],
        tool_config: ToolConfig,
        agent_framework_context: Optional[AgentFrameworkContext],
    ):
        self.definition = definition
        self.config = config
        self.tool_config = tool_config
        self.agent_framework_context = agent_framework_context

    @property
    def agent_id(self) -> Optional[str]:
        if self.agent_framework_context is None:
            return None
        return self.agent_framework_context.agent.id


class ToolHandlerContext(_BaseHandlerContext):
    """What a tool can see and change while prompts are processed"""

    def __init__(self, definition, config, tool_config, agent_framework_context,
                 prompts: List[PromptNode], messages: List[AgentInstanceMessage]):
        super().__init__(definition, config, tool_config, agent_framework_context)
        self.prompts = prompts
        self.messages = messages

    def find_prompt(self, prompt_id: str) -> Optional[PromptLocation]:
        return find_prompt_by_id(self.prompts, prompt_id)

    def inject_tool_list(
        self,
        target_id: str,
        position: Union[InjectPosition, str] = InjectPosition.CHILD,
        tool_schemas: Optional[Dict[str, Type[BaseModel]]] = None,
        caption: Optional[str] = None,
    ) -> Optional[PromptNode]:
        """Describe this tool's LLM-callable functions inside the prompt"""

        schemas = tool_schemas if tool_schemas is not None else self.definition.llm_tool_schemas
        if not schemas:
            logger.debug("No tool schemas to inject", tool_id=self.definition.tool_id)
            return None
        content = "\n\n".join(schema_to_tool_content(name, schema) for name, schema in schemas.items())
        return self._inject(
            target_id,
            position,
            PromptNode(
                id=new_id(f"{self.definition.tool_id}-tools"),
                caption=caption or f"{self.definition.display_name} Tools",
                text=content,
            ),
        )

    def inject_content(
        self,
        target_id: str,
        position: Union[InjectPosition, str],
        content: str,
        caption: Optional[str] = None,
        id: Optional[str] = None,
    ) -> Optional[PromptNode]:
        """Insert a static text node relative to a target node"""
        return self._inject(
            target_id,
            position,
            PromptNode(
                id=id or new_id(f"{self.definition.tool_id}-content"),
                caption=caption or "Injected Content",
                text=content,
            ),
        )

    def _inject(self, target_id: str, position: Union[InjectPosition, str], node: PromptNode) -> Optional[PromptNode]:
        if not insert_prompt(self.prompts, target_id, node, position):
            logger.warning("Injection target not found", tool_id=self.definition.tool_id, target_id=target_id)
            return None
        agent_logger.log_context_update(
            agent_id=self.agent_id or "",
            context_type="prompt",
            action="inject",
            details={"tool_id": self.definition.tool_id, "target_id": target_id, "position": str(position)},
        )
        return node


class PostProcessHandlerContext(_BaseHandlerContext):
    """What a tool can see and change while the response is post-processed"""

    def __init__(self, definition, config, tool_config, agent_framework_context,
                 llm_response: str, responses: List[AgentResponse], prompts: List[PromptNode],
                 actions: HookActions):
        super().__init__(definition, config, tool_config, agent_framework_context)
        self.llm_response = llm_response
        self.responses = responses
        self.prompts = prompts
        self.actions = actions

    def find_prompt(self, prompt_id: str) -> Optional[PromptLocation]:
        return find_prompt_by_id(self.prompts, prompt_id)

    def find_response(self, response_id: str) -> Optional[AgentResponse]:
        stack = list(self.responses)
        while stack:
            response = stack.pop(0)
            if response.id == response_id:
                return response
            stack[0:0] = response.children
        return None


class ResponseHandlerContext(_BaseHandlerContext):
    """What a tool can do once the model finished a response"""

    def __init__(self, definition, config, tool_config, agent_framework_context,
                 hook_context: AIResponseContext, hooks: AgentFrameworkHooks,
                 tool_call: Optional[ToolCallMatch]):
        super().__init__(definition, config, tool_config, agent_framework_context)
        self.hook_context = hook_context
        self.hooks = hooks
        self.tool_call = tool_call

    @property
    def response(self):
        return self.hook_context.response

    @property
    def actions(self) -> HookActions:
        return self.hook_context.actions

    @property
    def messages(self) -> List[AgentInstanceMessage]:
        return self.agent_framework_context.messages

    async def execute_tool_call(self, tool_name: str, executor: ToolExecutorFn) -> bool:
        """Run the parsed call if it targets ``tool_name``

        Returns False when the response called something else. Failures are
        turned into an error result message, they never abort the turn.
        """

        call = self.tool_call
        if call is None or call.tool_id != tool_name:
            return False
        schema = self.definition.llm_tool_schemas.get(tool_name)
        if schema is None:
            logger.error("Tool schema not found", tool_id=self.definition.tool_id, tool_name=tool_name)
            return False

        raw_parameters = call.parameters or {}
        try:
            parameters = ToolParameterValidator.validate_or_raise(schema, raw_parameters, subject=tool_name)
            result = await self.definition.tool_executor.execute(tool_name, executor, parameters)
        except (ToolValidationError, ToolExecutionError) as e:
            logger.error("Tool call failed", tool_name=tool_name, error=e.message)
            agent_logger.log_tool_execution(
                tool_name=tool_name,
                agent_id=self.agent_id or "",
                input_data=raw_parameters,
                success=False,
                error=e.message,
            )
            result = ToolExecutionResult(success=False, error=e.message)
            self.add_tool_result(tool_name, raw_parameters, e.message, is_error=True, duration=ERROR_RESULT_DURATION)
            await self.yield_to_self()
            await self._notify_executed(tool_name, raw_parameters, result, call)
            return True

        parameter_data = parameters.model_dump(mode="json", by_alias=True)
        agent_logger.log_tool_execution(
            tool_name=tool_name,
            agent_id=self.agent_id or "",
            input_data=parameter_data,
            output_data=result.data,
            duration_ms=result.metadata.get("execution_time_ms"),
            success=result.success,
            error=result.error,
        )
        self.add_tool_result(
            tool_name,
            parameter_data,
            _result_text(result),
            is_error=not result.success,
            duration=self._result_duration(),
        )
        await self.yield_to_self()
        await self._notify_executed(tool_name, parameter_data, result, call)
        return True

    def add_tool_result(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        text: str,
        is_error: bool = False,
        duration: Optional[int] = DEFAULT_RESULT_DURATION,
    ) -> AgentInstanceMessage:
        """Append a tool-result message to the conversation

        The message is not persisted here; message management stores it once
        ``toolExecuted`` fires.
        """

        now = utc_now()
        message = AgentInstanceMessage(
            id=new_id("tool-result"),
            agent_id=self.agent_id,
            role=MessageRole.TOOL,
            content=format_tool_result(tool_name, parameters, text, is_error),
            duration=duration,
            created=now,
            modified=now,
            metadata={
                "is_tool_result": True,
                "is_error": is_error,
                "tool_id": tool_name,
                "tool_parameters": parameters,
                "is_persisted": False,
                "is_complete": True,
            },
        )
        self.messages.append(message)
        return message

    async def yield_to_self(self) -> None:
        """Give the next round back to the model

        The assistant message that carried the call only has to stay in the
        context for one more round, so it is stored with duration 1.
        """

        self.actions.yield_next_round_to = YieldTarget.SELF

        latest = None
        for message in reversed(self.messages):
            if message.role == MessageRole.ASSISTANT:
                latest = message
                break
        if latest is None or latest.content != self.response.content:
            return

        latest.duration = 1
        latest.mark(contains_tool_call=True, tool_id=self.tool_call.tool_id if self.tool_call else None)

        persistence = self.agent_framework_context.persistence
        if persistence is None:
            return
        await persistence.save_message(latest)
        latest.mark(is_persisted=True)
        persistence.debounce_update_message(latest, latest.agent_id, debounce_ms=0)

    def _result_duration(self) -> int:
        duration = getattr(self.config, "tool_result_duration", None)
        return duration if duration is not None else DEFAULT_RESULT_DURATION

    async def _notify_executed(self, tool_name: str, parameters: Dict[str, Any],
                               result: ToolExecutionResult, call: ToolCallMatch) -> None:
        await self.hooks.tool_executed.call(ToolExecutionContext(
            agent_framework_context=self.agent_framework_context,
            tool_result=result,
            tool_info=ToolCallInfo(tool_id=tool_name, parameters=parameters, original_text=call.original_text),
            request_id=self.hook_context.request_id,
        ))


class ToolDefinition:
    """A tool as registered with the registry; ``tool`` is what taps the hooks"""

    def __init__(
        self,
        tool_id: str,
        display_name: str,
        description: str,
        config_schema: Type[BaseModel],
        llm_tool_schemas: Optional[Dict[str, Type[BaseModel]]] = None,
        on_process_prompts: Optional[Callback] = None,
        on_response_complete: Optional[Callback] = None,
        on_post_process: Optional[Callback] = None,
        tool_executor: Optional[ToolExecutor] = None,
    ):
        self.tool_id = tool_id
        self.display_name = display_name
        self.description = description
        self.config_schema = config_schema
        self.llm_tool_schemas = dict(llm_tool_schemas or {})
        self.on_process_prompts = on_process_prompts
        self.on_response_complete = on_response_complete
        self.on_post_process = on_post_process
        self.tool_executor = tool_executor or ToolExecutor()

    @property
    def parameter_key(self) -> str:
        return f"{self.tool_id}Param"

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.tool_id,
            "name": self.display_name,
            "description": self.description,
            "llm_tools": sorted(self.llm_tool_schemas),
        }

    def tool(self, hooks: AgentFrameworkHooks) -> None:
        """Tap the lifecycle callbacks this definition provides"""

        if self.on_process_prompts is not None:
            hooks.process_prompts.tap(self.tool_id, self._handle_process_prompts)
        if self.on_response_complete is not None:
            hooks.response_complete.tap(
                self.tool_id,
                lambda context: self._handle_response_complete(context, hooks),
            )
        if self.on_post_process is not None:
            hooks.post_process.tap(self.tool_id, self._handle_post_process)

    def parse_config(self, tool_config: Optional[ToolConfig], strict: bool = True) -> Optional[BaseModel]:
        """Validate the ``{tool_id}Param`` block of a tool config

        Returns None when the block is missing or invalid.
        """

        if tool_config is None:
            return None
        raw = tool_config.get_param(self.tool_id)
        if not raw:
            return None
        result = ToolParameterValidator.validate(self.config_schema, raw)
        if not result.is_valid:
            log = logger.error if strict else logger.warning
            log("Invalid tool config", tool_id=self.tool_id, tool_config_id=tool_config.id, errors=result.errors)
            return None
        return result.value

    def _applies_to(self, tool_config: Optional[ToolConfig]) -> bool:
        return tool_config is not None and tool_config.tool_id == self.tool_id

    async def _handle_process_prompts(self, context: PromptConcatHookContext) -> PromptConcatHookContext:
        if not self._applies_to(context.tool_config):
            return context
        config = self.parse_config(context.tool_config)
        if config is None:
            return context

        handler_context = ToolHandlerContext(
            self, config, context.tool_config, context.agent_framework_context,
            prompts=context.prompts, messages=context.messages,
        )
        await invoke_handler(self.on_process_prompts, handler_context)
        context.prompts = handler_context.prompts
        return context

    async def _handle_post_process(self, context: PostProcessContext) -> PostProcessContext:
        if not self._applies_to(context.tool_config):
            return context
        config = self.parse_config(context.tool_config)
        if config is None:
            return context

        handler_context = PostProcessHandlerContext(
            self, config, context.tool_config, context.agent_framework_context,
            llm_response=context.llm_response, responses=context.responses,
            prompts=context.prompts, actions=context.actions,
        )
        await invoke_handler(self.on_post_process, handler_context)
        context.responses = handler_context.responses
        return context

    async def _handle_response_complete(self, context: AIResponseContext, hooks: AgentFrameworkHooks) -> None:
        framework_config = context.framework_config or context.agent_framework_context.agent_def.framework_config
        tool_config = framework_config.find_tool_config(self.tool_id)
        if tool_config is None:
            return
        response = context.response
        if response.status != "done" or not response.content:
            return

        match = match_tool_calling(response.content)
        tool_call = match if match.found and match.tool_id in self.llm_tool_schemas else None
        config = self.parse_config(tool_config, strict=False)

        handler_context = ResponseHandlerContext(
            self, config, tool_config, context.agent_framework_context,
            hook_context=context, hooks=hooks, tool_call=tool_call,
        )
        await invoke_handler(self.on_response_complete, handler_context)


def define_tool(
    tool_id: str,
    display_name: str,
    description: str,
    config_schema: Type[BaseModel],
    llm_tool_schemas: Optional[Dict[str, Type[BaseModel]]] = None,
    on_process_prompts: Optional[Callback] = None,
    on_response_complete: Optional[Callback] = None,
    on_post_process: Optional[Callback] = None,
) -> ToolDefinition:
    """Describe a tool; register the result with ``ToolRegistry.register_tool``"""
    return ToolDefinition(
        tool_id=tool_id,
        display_name=display_name,
        description=description,
        config_schema=config_schema,
        llm_tool_schemas=llm_tool_schemas,
        on_process_prompts=on_process_prompts,
        on_response_complete=on_response_complete,
        on_post_process=on_post_process,
    )
