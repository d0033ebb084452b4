"""Always-on tool that keeps the message store and the UI in sync with a turn"""

from typing import Optional

import structlog

from domain.exceptions import PersistenceError
from domain.hooks.contexts import (
    AIResponseContext, AgentStatusContext, ToolExecutionContext, UserMessageContext,
)
from domain.hooks.hook_registry import AgentFrameworkHooks
from domain.models.agent import AgentInstance, AgentInstanceMessage, new_id
from domain.models.agent_state import MessageRole
from domain.models.base import utc_now

logger = structlog.get_logger(__name__)

TOOL_NAME = "messageManagement"


def _streaming_message(agent: AgentInstance) -> Optional[AgentInstanceMessage]:
    """The open assistant message of the current turn

    Only messages after the latest user message are considered.
    """
    for message in reversed(agent.messages):
        if message.role == MessageRole.USER:
            return None
        if message.role == MessageRole.ASSISTANT and not message.flag("is_complete"):
            return message
    return None


def _new_assistant_message(agent: AgentInstance, content: str, complete: bool) -> AgentInstanceMessage:
    now = utc_now()
    message = AgentInstanceMessage(
        id=new_id("ai-response"),
        agent_id=agent.id,
        role=MessageRole.ASSISTANT,
        content=content,
        created=now,
        modified=now,
        metadata={"is_complete": complete},
    )
    agent.messages.append(message)
    return message


async def on_user_message_received(context: UserMessageContext) -> None:
    persistence = context.agent_framework_context.persistence
    message = context.message
    if persistence is None or message.flag("is_persisted"):
        return
    try:
        await persistence.save_message(message)
    except PersistenceError as e:
        # The in-memory copy still drives this turn
        logger.error("Failed to persist user message", message_id=message.id, error=e.message)
        return
    message.mark(is_persisted=True)
    logger.debug("User message persisted", message_id=message.id, agent_id=message.agent_id,
                 content_length=len(message.content))


async def on_agent_status_changed(context: AgentStatusContext) -> None:
    agent = context.agent_framework_context.agent
    agent.status = context.status
    persistence = context.agent_framework_context.persistence
    if persistence is None:
        return
    await persistence.update_agent(agent.id, status=context.status)
    logger.debug("Agent status updated", agent_id=agent.id, state=context.status.state.value)


async def on_response_update(context: AIResponseContext) -> None:
    response = context.response
    if response.status != "update" or not response.content:
        return

    agent = context.agent_framework_context.agent
    persistence = context.agent_framework_context.persistence
    message = _streaming_message(agent)
    if message is None:
        message = _new_assistant_message(agent, response.content, complete=False)
        # First write is immediate so the stored order follows the conversation
        if persistence is not None:
            try:
                await persistence.save_message(message)
                message.mark(is_persisted=True)
            except PersistenceError as e:
                logger.warning("Failed to persist streaming message", message_id=message.id, error=e.message)
    else:
        message.content = response.content
        message.touch()

    if persistence is not None:
        persistence.debounce_update_message(message, agent.id)


async def on_response_complete(context: AIResponseContext) -> None:
    response = context.response
    if response.status != "done" or not response.content:
        return

    agent = context.agent_framework_context.agent
    message = _streaming_message(agent)
    if message is not None:
        message.content = response.content
        message.touch()
        message.mark(is_complete=True)
    else:
        message = _new_assistant_message(agent, response.content, complete=True)

    persistence = context.agent_framework_context.persistence
    if persistence is None:
        return
    await persistence.save_message(message)
    message.mark(is_persisted=True)
    persistence.debounce_update_message(message, agent.id, debounce_ms=0)
    logger.debug("Assistant message completed", message_id=message.id, content_length=len(response.content))


async def on_tool_executed(context: ToolExecutionContext) -> None:
    persistence = context.agent_framework_context.persistence
    if persistence is None:
        return
    agent = context.agent_framework_context.agent
    pending = [
        message for message in agent.messages
        if message.flag("is_tool_result") and not message.flag("is_persisted")
    ]
    for message in pending:
        try:
            await persistence.save_message(message)
        except PersistenceError as e:
            logger.error("Failed to persist tool result", message_id=message.id, error=e.message)
            continue
        message.mark(is_persisted=True)
        persistence.debounce_update_message(message, agent.id)
        logger.debug("Tool result persisted", message_id=message.id, tool_id=message.metadata.get("tool_id"),
                     duration=message.duration)


def message_management_tool(hooks: AgentFrameworkHooks) -> None:
    hooks.user_message_received.tap(TOOL_NAME, on_user_message_received)
    hooks.agent_status_changed.tap(TOOL_NAME, on_agent_status_changed)
    hooks.response_update.tap(TOOL_NAME, on_response_update)
    hooks.response_complete.tap(TOOL_NAME, on_response_complete)
    hooks.tool_executed.tap(TOOL_NAME, on_tool_executed)
