from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Any, Optional, Union

from domain.hooks.contexts import AgentFrameworkContext
from domain.models.agent import AgentInstanceLatestStatus

StatusCallback = Callable[[AgentInstanceLatestStatus], Union[None, Awaitable[None]]]


class BaseAgentFramework(ABC):
    """Base class for the handlers that run one conversation turn

    Definitions select their framework by ``handler_id``.
    """

    def __init__(self, handler_id: str, description: str):
        self.handler_id = handler_id
        self.description = description

    @abstractmethod
    async def run(
        self,
        context: AgentFrameworkContext,
        on_status: Optional[StatusCallback] = None,
    ) -> AgentInstanceLatestStatus:
        """Answer the latest user message; intermediate statuses go to ``on_status``"""
        pass

    @abstractmethod
    def get_config_schema(self) -> Dict[str, Any]:
        """JSON schema of the framework config this handler understands"""
        pass

    def get_info(self) -> Dict[str, Any]:
        """Get framework information"""
        return {
            "handler_id": self.handler_id,
            "description": self.description,
        }
