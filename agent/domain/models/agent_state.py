from datetime import datetime
from enum import Enum

from pydantic import Field

from domain.models.base import CamelModel, utc_now


class AgentState(str, Enum):
    """Lifecycle state of an agent instance"""
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.COMPLETED, AgentState.CANCELED, AgentState.FAILED)


class RoundResult(str, Enum):
    """Outcome of one provider round, drives the orchestration loop"""
    CONTINUE = "continue"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class YieldTarget(str, Enum):
    """Who takes the next round after a response completes"""
    SELF = "self"
    HUMAN = "human"


class MessageRole(str, Enum):
    """Role of a persisted conversation message"""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    ERROR = "error"


class AgentStatus(CamelModel):
    """Persisted status of an agent instance"""
    state: AgentState = Field(default=AgentState.SUBMITTED, description="Current lifecycle state")
    modified: datetime = Field(default_factory=utc_now)
