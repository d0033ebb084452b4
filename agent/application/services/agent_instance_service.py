import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from application.services.agent_definition_service import AgentDefinitionService
from domain.exceptions import (
    AgentError, AgentNotFoundError, FrameworkNotFoundError, PromptConcatTimeoutError,
)
from domain.hooks.contexts import AgentFrameworkContext
from domain.models.agent import (
    AgentInstance, AgentInstanceLatestStatus, AgentInstanceMessage, FrameworkConfig, new_id,
)
from domain.models.agent_state import AgentState, AgentStatus, MessageRole
from domain.orchestration.framework.base_framework import BaseAgentFramework
from domain.prompt.prompt_concat import PromptConcatResult, prompt_concat
from domain.repositories.agent_repository import AgentRepository
from domain.streaming.streaming_handler import StreamingHandler
from domain.streaming.update_broadcaster import Subscription, channel_key
from domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)


@dataclass
class CancelToken:
    cancelled: bool = False


class AgentInstanceService:
    """Lifecycle of agent instances and the turns that run on them"""

    def __init__(
        self,
        repository: AgentRepository,
        definitions: AgentDefinitionService,
        registry: ToolRegistry,
        streaming_handler: StreamingHandler,
        frameworks: Dict[str, BaseAgentFramework],
        prompt_concat_timeout_s: float = 20.0,
    ):
        self.repository = repository
        self.definitions = definitions
        self.registry = registry
        self.streaming = streaming_handler
        self.frameworks = frameworks
        self.prompt_concat_timeout_s = prompt_concat_timeout_s
        self._cancel_tokens: Dict[str, CancelToken] = {}

    async def create_agent(self, definition_id: Optional[str] = None) -> AgentInstance:
        definition = self.definitions.get_agent_def(definition_id)
        instance_id = new_id()
        instance = AgentInstance(
            id=instance_id,
            agent_def_id=definition.id,
            name=f"{definition.name} - {instance_id[:6]}",
            avatar_url=definition.avatar_url,
            status=AgentStatus(state=AgentState.COMPLETED),
        )
        await self.repository.create_instance(instance)
        logger.info("Created agent instance", agent_id=instance.id, definition_id=definition.id)
        return instance

    async def get_agent(self, agent_id: str) -> AgentInstance:
        agent = await self.repository.get_instance(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent instance {agent_id} not found", details={"agent_id": agent_id})
        return agent

    async def update_agent(
        self,
        agent_id: str,
        messages: Optional[List[AgentInstanceMessage]] = None,
        **fields: Any,
    ) -> AgentInstance:
        """Update instance fields and store messages that are not stored yet"""

        current = await self.get_agent(agent_id)
        if messages:
            stored = {message.id for message in current.messages}
            for message in messages:
                if message.id not in stored:
                    await self.streaming.save_message(message)
        if fields:
            return await self.streaming.update_agent(agent_id, **fields)

        agent = await self.get_agent(agent_id)
        await self.streaming.notify_agent_update(agent_id, agent)
        return agent

    async def delete_agent(self, agent_id: str) -> None:
        token = self._cancel_tokens.pop(agent_id, None)
        if token is not None:
            token.cancelled = True
        self.streaming.cancel_agent_pending(agent_id)
        deleted = await self.repository.delete_instance(agent_id)
        self.streaming.broadcaster.close_agent(agent_id)
        if not deleted:
            raise AgentNotFoundError(f"Agent instance {agent_id} not found", details={"agent_id": agent_id})
        logger.info("Deleted agent instance", agent_id=agent_id)

    async def get_agents(
        self,
        page: int = 1,
        page_size: int = 20,
        closed: Optional[bool] = None,
        search_name: Optional[str] = None,
    ) -> List[AgentInstance]:
        return await self.repository.list_instances(page, page_size, closed=closed, search_name=search_name)

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._cancel_tokens

    async def send_message(
        self,
        agent_id: str,
        text: str,
        file: Optional[Dict[str, Any]] = None,
    ) -> AgentInstanceLatestStatus:
        """Append a user message and run one turn to completion"""

        agent = await self.get_agent(agent_id)
        if agent.closed:
            raise AgentError(f"Agent instance {agent_id} is closed", error_code="agent_closed",
                             details={"agent_id": agent_id})
        if self.is_running(agent_id):
            raise AgentError(f"Agent instance {agent_id} is already answering", error_code="agent_busy",
                             details={"agent_id": agent_id})

        definition = self.definitions.get_agent_def(agent.agent_def_id)
        framework = self.frameworks.get(definition.handler_id)
        if framework is None:
            raise FrameworkNotFoundError(f"Handler {definition.handler_id} not registered",
                                         details={"handler_id": definition.handler_id})

        user_message = AgentInstanceMessage(
            id=new_id("user"),
            agent_id=agent_id,
            role=MessageRole.USER,
            content=text,
            metadata={"file": file} if file else {},
        )
        agent.messages.append(user_message)

        token = CancelToken()
        self._cancel_tokens[agent_id] = token
        context = AgentFrameworkContext(
            agent=agent,
            agent_def=definition,
            is_cancelled=lambda: token.cancelled,
            persistence=self.streaming,
        )

        def on_status(status: AgentInstanceLatestStatus) -> None:
            if status.message is not None:
                self.streaming.publish_status(agent_id, status.message.id, status)

        logger.info("Sending message to agent", agent_id=agent_id, message_id=user_message.id,
                    handler_id=definition.handler_id)
        try:
            final = await framework.run(context, on_status)
        except Exception as e:
            logger.error("Agent framework failed", agent_id=agent_id, error=str(e), exc_info=True)
            await self.streaming.update_agent(agent_id, status=AgentStatus(state=AgentState.FAILED))
            return AgentInstanceLatestStatus(state=AgentState.FAILED)
        finally:
            if self._cancel_tokens.get(agent_id) is token:
                del self._cancel_tokens[agent_id]

        if final.message is not None:
            self.streaming.publish_status(agent_id, final.message.id, final)
        logger.info("Agent turn finished", agent_id=agent_id, state=final.state.value)
        return final

    async def cancel_agent(self, agent_id: str) -> None:
        """Stop the running turn; repeated calls have no further effect"""

        token = self._cancel_tokens.get(agent_id)
        if token is None:
            logger.warning("No active operation found for agent", agent_id=agent_id)
            return
        if token.cancelled:
            logger.debug("Agent already cancelled", agent_id=agent_id)
            return

        token.cancelled = True
        await self.streaming.update_agent(agent_id, status=AgentStatus(state=AgentState.CANCELED))
        logger.info("Canceled agent instance", agent_id=agent_id)

    async def close_agent(self, agent_id: str) -> None:
        await self.get_agent(agent_id)
        await self.streaming.update_agent(agent_id, closed=True)
        token = self._cancel_tokens.pop(agent_id, None)
        if token is not None:
            token.cancelled = True
        self.streaming.broadcaster.close_agent(agent_id)
        logger.info("Closed agent instance", agent_id=agent_id)

    async def subscribe(self, agent_id: str, message_id: Optional[str] = None) -> Subscription:
        """Stream instance updates, or status updates of one message

        The channel is seeded from the store first, so the first value a
        subscriber sees is current. Instance snapshots are not published
        while nobody listens, hence the refetch for an idle instance channel.
        """

        broadcaster = self.streaming.broadcaster
        key = channel_key(agent_id, message_id)
        if message_id is None:
            seed = broadcaster.subscriber_count(key) == 0 or not broadcaster.has_latest(key)
        else:
            seed = not broadcaster.has_latest(key)

        if seed:
            agent = await self.repository.get_instance(agent_id)
            if agent is None:
                logger.warning("Subscribed to unknown agent", agent_id=agent_id)
            elif message_id is None:
                broadcaster.publish(key, agent)
            else:
                message = next((m for m in agent.messages if m.id == message_id), None)
                if message is not None:
                    broadcaster.publish(key, AgentInstanceLatestStatus(
                        state=agent.status.state, message=message, modified=message.modified,
                    ))

        return broadcaster.subscribe(key)

    async def concat_prompt(
        self,
        framework_config: FrameworkConfig,
        messages: List[AgentInstanceMessage],
    ) -> PromptConcatResult:
        """Preview the prompt a definition would produce for some messages"""

        try:
            return await asyncio.wait_for(
                prompt_concat(framework_config, messages, registry=self.registry),
                timeout=self.prompt_concat_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise PromptConcatTimeoutError(
                f"Prompt generation timed out after {self.prompt_concat_timeout_s}s"
            ) from e

    def get_handler_config_schema(self, handler_id: str) -> Dict[str, Any]:
        framework = self.frameworks.get(handler_id)
        if framework is None:
            raise FrameworkNotFoundError(f"Handler {handler_id} not registered", details={"handler_id": handler_id})
        return framework.get_config_schema()

    async def shutdown(self) -> None:
        for token in self._cancel_tokens.values():
            token.cancelled = True
        await self.streaming.flush_pending()
