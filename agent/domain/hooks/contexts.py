"""Context objects passed to hook handlers

Every context is created for a single hook call inside a single turn and is
never shared between concurrently running turns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from domain.models.agent import (
    AgentDefinition, AgentInstance, AgentInstanceMessage, FrameworkConfig, ToolConfig
)
from domain.models.agent_state import AgentStatus, YieldTarget
from domain.models.base import utc_now
from domain.models.prompt import AgentResponse, PromptNode
from domain.provider.llm_provider import ProviderResponse
from domain.tool.tool_executor import ToolExecutionResult


@dataclass
class AgentFrameworkContext:
    """Everything a framework and its tools know about the running conversation"""
    agent: AgentInstance
    agent_def: AgentDefinition
    is_cancelled: Callable[[], bool] = lambda: False
    # StreamingHandler; typed loosely to keep the domain layers acyclic
    persistence: Any = None
    provider_config: Dict[str, Any] = field(default_factory=dict)

    @property
    def messages(self) -> List[AgentInstanceMessage]:
        return self.agent.messages


@dataclass
class HookActions:
    """Bag a tool fills during responseComplete to steer the control loop"""
    yield_next_round_to: Optional[YieldTarget] = None
    new_user_message: Optional[str] = None


@dataclass
class PromptConcatHookContext:
    messages: List[AgentInstanceMessage]
    prompts: List[PromptNode]
    tool_config: Optional[ToolConfig] = None
    agent_framework_context: Optional[AgentFrameworkContext] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PostProcessContext:
    messages: List[AgentInstanceMessage]
    llm_response: str
    responses: List[AgentResponse]
    prompts: List[PromptNode] = field(default_factory=list)
    tool_config: Optional[ToolConfig] = None
    agent_framework_context: Optional[AgentFrameworkContext] = None
    actions: HookActions = field(default_factory=HookActions)


@dataclass
class UserMessageContext:
    agent_framework_context: AgentFrameworkContext
    message: AgentInstanceMessage
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def text(self) -> str:
        return self.message.content

    @property
    def file(self) -> Optional[Dict[str, Any]]:
        return self.message.metadata.get("file")


@dataclass
class AgentStatusContext:
    agent_framework_context: AgentFrameworkContext
    status: AgentStatus


@dataclass
class AIResponseContext:
    agent_framework_context: AgentFrameworkContext
    response: ProviderResponse
    request_id: Optional[str] = None
    is_final: bool = False
    framework_config: Optional[FrameworkConfig] = None
    actions: HookActions = field(default_factory=HookActions)


@dataclass
class ToolCallInfo:
    tool_id: str
    parameters: Dict[str, Any]
    original_text: Optional[str] = None


@dataclass
class ToolExecutionContext:
    agent_framework_context: AgentFrameworkContext
    tool_result: ToolExecutionResult
    tool_info: ToolCallInfo
    request_id: Optional[str] = None
