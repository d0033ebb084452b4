from dataclasses import dataclass
from typing import Dict, Any, Optional
import structlog

from domain.hooks.contexts import (
    AIResponseContext, AgentFrameworkContext, AgentStatusContext, HookActions, UserMessageContext,
)
from domain.hooks.hook_registry import AgentFrameworkHooks, invoke_handler
from domain.models.agent import (
    DEFAULT_HANDLER_ID, AgentInstanceLatestStatus, AgentInstanceMessage, FrameworkConfig, new_id,
)
from domain.models.agent_state import AgentState, AgentStatus, MessageRole, RoundResult, YieldTarget
from domain.orchestration.framework.base_framework import BaseAgentFramework, StatusCallback
from domain.prompt.prompt_concat import prompt_concat
from domain.prompt.response_concat import response_concat
from domain.provider.llm_provider import (
    LLMProvider, ProviderErrorDetail, ProviderResponse, merge_provider_config,
)
from domain.tool.tool_registry import ToolRegistry
from infrastructure.observability.logging import AgentLogger, agent_logger

logger = structlog.get_logger(__name__)


@dataclass
class _TurnState:
    """Mutable bookkeeping of one turn"""
    round_number: int = 0
    request_id: Optional[str] = None
    final_status: Optional[AgentInstanceLatestStatus] = None


class AgentOrchestrator(BaseAgentFramework):
    """Runs a conversation turn: prompt, stream, let tools react, repeat

    The loop keeps calling the provider while a tool yields the next round
    back to the model, and stops on completion, failure or cancellation.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        provider: LLMProvider,
        handler_id: str = DEFAULT_HANDLER_ID,
        logger: Optional[AgentLogger] = None,
    ):
        super().__init__(handler_id, "Prompt concatenation with tool calling")
        self.registry = registry
        self.provider = provider
        self.agent_logger = logger or agent_logger

    def get_config_schema(self) -> Dict[str, Any]:
        return {
            "framework": FrameworkConfig.model_json_schema(by_alias=True),
            "tools": self.registry.get_config_schemas(),
        }

    async def run(
        self,
        context: AgentFrameworkContext,
        on_status: Optional[StatusCallback] = None,
    ) -> AgentInstanceLatestStatus:
        agent = context.agent
        last_message = agent.last_message()
        if last_message is None or last_message.role != MessageRole.USER or last_message.flag("processed"):
            logger.debug("No unprocessed user message, nothing to do", agent_id=agent.id)
            return AgentInstanceLatestStatus(state=AgentState.COMPLETED)

        structlog.contextvars.bind_contextvars(agent_id=agent.id)
        try:
            return await self._run_turn(context, last_message, on_status)
        finally:
            structlog.contextvars.unbind_contextvars("agent_id", "round")

    async def _run_turn(
        self,
        context: AgentFrameworkContext,
        user_message: AgentInstanceMessage,
        on_status: Optional[StatusCallback],
    ) -> AgentInstanceLatestStatus:
        agent = context.agent
        framework_config = context.agent_def.framework_config
        hooks, tool_configs = self.registry.create_hooks_with_tools(framework_config)

        self.agent_logger.log_agent_event("turn_started", agent.id, {"message_id": user_message.id})
        await hooks.user_message_received.call(UserMessageContext(context, user_message))
        user_message.mark(processed=True)
        await self._change_status(hooks, context, AgentState.WORKING)

        context.provider_config = merge_provider_config(
            await self.provider.get_default_config(),
            context.agent_def.ai_api_config,
            agent.ai_api_config,
        )

        turn = _TurnState()
        result = RoundResult.CONTINUE
        try:
            while result == RoundResult.CONTINUE:
                turn.round_number += 1
                structlog.contextvars.bind_contextvars(round=turn.round_number)
                try:
                    result = await self._run_round(context, hooks, tool_configs, turn, on_status)
                except Exception as e:
                    logger.error("Round failed unexpectedly", agent_id=agent.id, round=turn.round_number,
                                 error=str(e), exc_info=True)
                    result = await self._fail(context, ProviderErrorDetail(name=type(e).__name__, message=str(e)),
                                              turn)
                self.agent_logger.log_round_transition(agent.id, turn.round_number, result.value)
        finally:
            if context.is_cancelled() and turn.request_id:
                await self._cancel_request(turn.request_id)

        if result in (RoundResult.CANCELED, RoundResult.FAILED):
            await self._close_interrupted_messages(context)

        if result == RoundResult.CANCELED:
            logger.info("Turn canceled", agent_id=agent.id, rounds=turn.round_number)
            return AgentInstanceLatestStatus(state=AgentState.CANCELED)

        status = turn.final_status or AgentInstanceLatestStatus(
            state=AgentState.COMPLETED if result == RoundResult.COMPLETED else AgentState.FAILED
        )
        await self._change_status(hooks, context, status.state)
        self.agent_logger.log_agent_event("turn_finished", agent.id, {"state": status.state.value,
                                                                      "rounds": turn.round_number})
        return status

    async def _run_round(
        self,
        context: AgentFrameworkContext,
        hooks: AgentFrameworkHooks,
        tool_configs,
        turn: _TurnState,
        on_status: Optional[StatusCallback],
    ) -> RoundResult:
        if context.is_cancelled():
            return RoundResult.CANCELED

        framework_config = context.agent_def.framework_config
        concat = await prompt_concat(
            framework_config,
            context.messages,
            hooks=hooks,
            tool_configs=tool_configs,
            agent_framework_context=context,
        )
        if context.is_cancelled():
            return RoundResult.CANCELED

        logger.debug("Calling provider", round=turn.round_number, prompt_count=len(concat.flat_prompts))
        meta = {"agent_id": context.agent.id, "round": turn.round_number}
        stream = self.provider.generate(concat.flat_prompts, context.provider_config, meta)
        last_content = ""
        try:
            async for response in stream:
                if context.is_cancelled():
                    return RoundResult.CANCELED
                if response.request_id:
                    turn.request_id = response.request_id

                if response.status == "update":
                    last_content = response.content
                    await hooks.response_update.call(AIResponseContext(
                        agent_framework_context=context,
                        response=response,
                        request_id=turn.request_id,
                    ))
                    await self._emit(on_status, AgentInstanceLatestStatus(
                        state=AgentState.WORKING,
                        message=self._latest_message(context, MessageRole.ASSISTANT),
                    ))
                elif response.status == "done":
                    return await self._complete(context, hooks, tool_configs, response, turn, on_status)
                else:
                    return await self._fail(
                        context, response.error_detail or ProviderErrorDetail(message=response.content or "Unknown error"),
                        turn,
                    )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if context.is_cancelled():
            return RoundResult.CANCELED
        logger.warning("Provider stream ended without a final chunk", round=turn.round_number)
        return await self._complete(
            context, hooks, tool_configs,
            ProviderResponse(status="done", content=last_content, request_id=turn.request_id),
            turn, on_status,
        )

    async def _complete(
        self,
        context: AgentFrameworkContext,
        hooks: AgentFrameworkHooks,
        tool_configs,
        response: ProviderResponse,
        turn: _TurnState,
        on_status: Optional[StatusCallback],
    ) -> RoundResult:
        framework_config = context.agent_def.framework_config
        actions = HookActions()
        await hooks.response_complete.call(AIResponseContext(
            agent_framework_context=context,
            response=response,
            request_id=turn.request_id,
            is_final=True,
            framework_config=framework_config,
            actions=actions,
        ))

        result = await response_concat(framework_config, response.content, context, hooks, tool_configs, actions)

        if result.new_user_message:
            await self._append_user_message(context, result.new_user_message)
            turn.request_id = None
            return RoundResult.CONTINUE

        if result.yield_next_round_to == YieldTarget.SELF:
            if context.is_cancelled():
                return RoundResult.CANCELED
            turn.request_id = None
            await self._emit(on_status, AgentInstanceLatestStatus(
                state=AgentState.WORKING,
                message=self._latest_message(context),
            ))
            return RoundResult.CONTINUE

        turn.final_status = AgentInstanceLatestStatus(
            state=AgentState.COMPLETED,
            message=self._latest_message(context, MessageRole.ASSISTANT),
        )
        return RoundResult.COMPLETED

    async def _fail(self, context: AgentFrameworkContext, detail: ProviderErrorDetail, turn: _TurnState) -> RoundResult:
        """Record a provider error as an error message; there are no retries"""

        agent = context.agent
        persistence = context.persistence
        logger.error("Provider returned an error", agent_id=agent.id, error=detail.message, code=detail.code)

        if persistence is not None:
            for message in agent.messages:
                if message.flag("is_tool_result") and not message.flag("is_persisted"):
                    try:
                        await persistence.save_message(message)
                        message.mark(is_persisted=True)
                    except Exception as e:
                        logger.error("Failed to flush tool result", message_id=message.id, error=str(e))

        error_message = AgentInstanceMessage(
            id=new_id("error"),
            agent_id=agent.id,
            role=MessageRole.ERROR,
            content=f"Error: {detail.message}",
            duration=1,
            metadata={"error_detail": detail.model_dump(), "is_complete": True},
        )
        agent.messages.append(error_message)
        if persistence is not None:
            try:
                await persistence.save_message(error_message)
                error_message.mark(is_persisted=True)
            except Exception as e:
                logger.error("Failed to persist error message", message_id=error_message.id, error=str(e))

        turn.final_status = AgentInstanceLatestStatus(state=AgentState.FAILED, message=error_message)
        return RoundResult.FAILED

    async def _close_interrupted_messages(self, context: AgentFrameworkContext) -> None:
        """Keep a cut-off answer as it is

        The partial text is marked complete and written at once, so the next
        turn starts a new message instead of continuing this one. Its
        ``modified`` stamp is left alone to keep the stored order.
        """

        for message in context.messages:
            if message.role != MessageRole.ASSISTANT or message.flag("is_complete"):
                continue
            message.mark(is_complete=True, interrupted=True)
            if context.persistence is None:
                continue
            try:
                await context.persistence.save_message(message)
                message.mark(is_persisted=True)
            except Exception as e:
                logger.error("Failed to persist interrupted message", message_id=message.id, error=str(e))
            logger.debug("Closed interrupted message", message_id=message.id, content_length=len(message.content))

    async def _append_user_message(self, context: AgentFrameworkContext, text: str) -> None:
        message = AgentInstanceMessage(
            id=new_id("user"),
            agent_id=context.agent.id,
            role=MessageRole.USER,
            content=text,
            metadata={"processed": True},
        )
        context.agent.messages.append(message)
        if context.persistence is not None:
            await context.persistence.save_message(message)
            message.mark(is_persisted=True)

    async def _change_status(self, hooks: AgentFrameworkHooks, context: AgentFrameworkContext, state: AgentState) -> None:
        await hooks.agent_status_changed.call(AgentStatusContext(context, AgentStatus(state=state)))

    async def _cancel_request(self, request_id: str) -> None:
        try:
            await self.provider.cancel(request_id)
        except Exception as e:
            logger.warning("Provider cancel failed", request_id=request_id, error=str(e))

    async def _emit(self, on_status: Optional[StatusCallback], status: AgentInstanceLatestStatus) -> None:
        if on_status is None:
            return
        try:
            await invoke_handler(on_status, status)
        except Exception as e:
            logger.error("Status callback failed", state=status.state.value, error=str(e), exc_info=True)

    @staticmethod
    def _latest_message(context: AgentFrameworkContext,
                        role: Optional[MessageRole] = None) -> Optional[AgentInstanceMessage]:
        for message in reversed(context.messages):
            if role is None or message.role == role:
                return message.model_copy(deep=True)
        return None
