from enum import Enum
from typing import Dict, Any, List, Literal, Optional

from pydantic import Field

from domain.models.base import CamelModel

PromptRole = Literal["system", "user", "assistant"]


class InjectPosition(str, Enum):
    """Where injected content lands relative to its target node"""
    BEFORE = "before"
    AFTER = "after"
    CHILD = "child"


class PromptNode(CamelModel):
    """One addressable segment of a prompt tree"""
    id: str = Field(description="Identifier, unique within one tree")
    caption: Optional[str] = Field(None, description="Human readable label")
    text: Optional[str] = Field(None, description="Literal text contributed by this node")
    enabled: bool = Field(default=True)
    role: Optional[PromptRole] = Field(None, description="Emits a separate turn when set")
    file: Optional[Dict[str, Any]] = Field(None, description="Attachment carried from history")
    children: List["PromptNode"] = Field(default_factory=list)


class AgentResponse(CamelModel):
    """Node of the response tree used during post-processing"""
    id: str
    caption: Optional[str] = None
    text: Optional[str] = None
    enabled: bool = True
    children: List["AgentResponse"] = Field(default_factory=list)


PromptNode.model_rebuild()
AgentResponse.model_rebuild()
