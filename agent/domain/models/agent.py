from datetime import datetime
from typing import Dict, Any, List, Optional
from uuid import uuid4

from pydantic import ConfigDict, Field, SerializationInfo, field_serializer, field_validator
from pydantic.alias_generators import to_camel, to_snake

from domain.models.agent_state import AgentState, AgentStatus, MessageRole
from domain.models.base import CamelModel, utc_now
from domain.models.prompt import AgentResponse, PromptNode

DEFAULT_HANDLER_ID = "basicPromptConcatHandler"


def new_id(prefix: Optional[str] = None) -> str:
    """Generate an entity id, optionally prefixed for readability in logs"""
    suffix = uuid4().hex
    return f"{prefix}-{suffix}" if prefix else suffix


class ToolConfig(CamelModel):
    """Configuration of one tool instance inside a framework config

    The tool specific parameters live under the extra key ``{tool_id}Param``.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Tool instance identifier")
    tool_id: str = Field(description="Identifier of the registered tool")
    forbid_overrides: bool = Field(default=False)

    @property
    def parameter_key(self) -> str:
        return f"{self.tool_id}Param"

    def get_param(self, tool_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the raw parameter object for a tool, if present"""
        key = f"{tool_id or self.tool_id}Param"
        return (self.model_extra or {}).get(key)


class FrameworkConfig(CamelModel):
    """Prompt template plus ordered tool configuration of an agent"""
    prompts: List[PromptNode] = Field(default_factory=list)
    tools: List[ToolConfig] = Field(default_factory=list)
    response: List[AgentResponse] = Field(default_factory=list)

    def find_tool_config(self, tool_id: str) -> Optional[ToolConfig]:
        for tool_config in self.tools:
            if tool_config.tool_id == tool_id:
                return tool_config
        return None


class AgentDefinition(CamelModel):
    """Immutable template an agent instance is created from"""
    id: str = Field(description="Definition identifier")
    name: str = Field(description="Display name")
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    handler_id: str = Field(default=DEFAULT_HANDLER_ID, description="Framework that runs the conversation")
    ai_api_config: Dict[str, Any] = Field(default_factory=dict, description="Provider/model overrides")
    framework_config: FrameworkConfig = Field(default_factory=FrameworkConfig)


class AgentInstanceMessage(CamelModel):
    """One persisted turn of a conversation"""
    id: str = Field(default_factory=new_id)
    agent_id: str = Field(description="Owning instance id")
    role: MessageRole
    content: str = ""
    content_type: str = "text/plain"
    duration: Optional[int] = Field(None, description="Rounds this message stays visible to the provider")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created: datetime = Field(default_factory=utc_now)
    modified: datetime = Field(default_factory=utc_now)

    @field_validator("metadata", mode="before")
    @classmethod
    def _snake_case_metadata(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {to_snake(key): item for key, item in value.items()}

    @field_serializer("metadata")
    def _serialize_metadata(self, metadata: Dict[str, Any], info: SerializationInfo) -> Dict[str, Any]:
        """Flag names follow the field aliases: camelCase on the wire"""
        if not info.by_alias:
            return metadata
        return {to_camel(key): item for key, item in metadata.items()}

    def flag(self, name: str) -> bool:
        """Read a boolean metadata flag"""
        return bool(self.metadata.get(name))

    def mark(self, **flags: Any) -> None:
        """Merge values into metadata"""
        self.metadata = {**self.metadata, **flags}

    def touch(self) -> None:
        self.modified = utc_now()


class AgentInstance(CamelModel):
    """A live conversation created from an agent definition"""
    id: str = Field(default_factory=new_id)
    agent_def_id: str
    name: str
    status: AgentStatus = Field(default_factory=AgentStatus)
    ai_api_config: Optional[Dict[str, Any]] = None
    avatar_url: Optional[str] = None
    closed: bool = False
    created: datetime = Field(default_factory=utc_now)
    modified: datetime = Field(default_factory=utc_now)
    messages: List[AgentInstanceMessage] = Field(default_factory=list)

    def last_message(self) -> Optional[AgentInstanceMessage]:
        return self.messages[-1] if self.messages else None


class AgentInstanceLatestStatus(CamelModel):
    """Status update pushed to subscribers while a turn runs"""
    state: AgentState
    message: Optional[AgentInstanceMessage] = None
    modified: datetime = Field(default_factory=utc_now)
