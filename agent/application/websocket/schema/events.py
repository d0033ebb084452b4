from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from domain.models.base import utc_now


class EventType(str, Enum):
    """WebSocket event types"""
    CONNECTION = "connection"
    AGENT_UPDATE = "agent_update"
    MESSAGE_STATUS = "message_status"
    ERROR = "error"
    # Client to server
    USER_MESSAGE = "user_message"
    CANCEL = "cancel"
    SUBSCRIBE_MESSAGE = "subscribe_message"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=utc_now)
    session_id: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]
    agent_id: str


class AgentUpdateEvent(BaseEvent):
    """Snapshot of an agent instance, messages included"""
    type: Literal[EventType.AGENT_UPDATE] = EventType.AGENT_UPDATE
    payload: Dict[str, Any]


class MessageStatusEvent(BaseEvent):
    """Latest status of one message while a turn runs"""
    type: Literal[EventType.MESSAGE_STATUS] = EventType.MESSAGE_STATUS
    message_id: str
    payload: Dict[str, Any]


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class UserMessageEvent(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str
    file: Optional[Dict[str, Any]] = None


class CancelEvent(BaseEvent):
    type: Literal[EventType.CANCEL] = EventType.CANCEL


class SubscribeMessageEvent(BaseEvent):
    """Ask for status updates of a single message"""
    type: Literal[EventType.SUBSCRIBE_MESSAGE] = EventType.SUBSCRIBE_MESSAGE
    message_id: str
