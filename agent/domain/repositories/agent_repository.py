from abc import ABC, abstractmethod
from typing import Any, List, Optional

from domain.models.agent import AgentInstance, AgentInstanceMessage


class AgentRepository(ABC):
    """Storage for agent instances and their messages

    Instances are returned with their messages sorted by ``modified``
    ascending; messages written with the same timestamp keep insertion order.
    """

    @abstractmethod
    async def create_instance(self, instance: AgentInstance) -> AgentInstance:
        """Store a new instance together with any messages it already has"""

    @abstractmethod
    async def get_instance(self, agent_id: str) -> Optional[AgentInstance]:
        """Load an instance with its messages, None when unknown"""

    @abstractmethod
    async def update_instance(self, agent_id: str, **fields: Any) -> AgentInstance:
        """Update instance fields; raises AgentNotFoundError when unknown"""

    @abstractmethod
    async def delete_instance(self, agent_id: str) -> bool:
        """Delete an instance and its messages"""

    @abstractmethod
    async def list_instances(
        self,
        page: int = 1,
        page_size: int = 20,
        closed: Optional[bool] = None,
        search_name: Optional[str] = None,
    ) -> List[AgentInstance]:
        """Newest first, without messages"""

    @abstractmethod
    async def save_message(self, message: AgentInstanceMessage) -> AgentInstanceMessage:
        """Insert or replace a message by id"""

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[AgentInstanceMessage]:
        pass
