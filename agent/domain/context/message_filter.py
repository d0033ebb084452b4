from typing import List, Optional, Sequence

import structlog

from domain.models.agent import AgentInstanceMessage
from domain.models.agent_state import MessageRole
from domain.models.prompt import PromptRole

logger = structlog.get_logger(__name__)


def is_message_expired(message: AgentInstanceMessage, index: int, total: int) -> bool:
    """A message expires once (total - 1 - index) >= duration

    duration None never expires, duration 0 is expired immediately.
    """
    if message.duration is None:
        return False
    if message.duration <= 0:
        return True
    rounds_since = total - 1 - index
    return rounds_since >= message.duration


def filter_messages_by_duration(messages: Sequence[AgentInstanceMessage]) -> List[AgentInstanceMessage]:
    """Drop messages whose duration has run out; relative order is kept"""

    total = len(messages)
    kept = [
        message for index, message in enumerate(messages)
        if not is_message_expired(message, index, total)
    ]
    if len(kept) != total:
        logger.debug("Filtered expired messages", total=total, kept=len(kept))
    return kept


def normalize_role(role: Optional[str]) -> PromptRole:
    """Map a stored message role onto a provider turn role

    Tool results go back to the model as user turns; error notices are shown
    as assistant turns so the model sees what went wrong on its side.
    """
    if role == MessageRole.USER:
        return "user"
    if role == MessageRole.TOOL:
        return "user"
    return "assistant"


def history_without_current_input(messages: Sequence[AgentInstanceMessage]) -> List[AgentInstanceMessage]:
    """Copy of the history minus a trailing user message

    The trailing user message is appended to the flat prompt separately, so it
    must not be duplicated inside the history block.
    """
    history = [message.model_copy(deep=True) for message in messages]
    if history and history[-1].role == MessageRole.USER:
        removed = history.pop()
        logger.debug("Removed current user message from history", message_id=removed.id, remaining=len(history))
    return history
