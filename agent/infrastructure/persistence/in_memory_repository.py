import asyncio
import itertools
from typing import Any, Dict, List, Optional

import structlog

from domain.exceptions import AgentNotFoundError
from domain.models.agent import AgentInstance, AgentInstanceMessage
from domain.models.base import utc_now
from domain.repositories.agent_repository import AgentRepository

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = {"name", "status", "closed", "ai_api_config", "avatar_url"}


class InMemoryAgentRepository(AgentRepository):
    """Process-local store, used for development and tests

    Stored objects are copies; callers never share state with the store.
    """

    def __init__(self):
        self._instances: Dict[str, AgentInstance] = {}
        self._messages: Dict[str, Dict[str, AgentInstanceMessage]] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    def _sorted_messages(self, agent_id: str) -> List[AgentInstanceMessage]:
        messages = self._messages.get(agent_id, {}).values()
        ordered = sorted(messages, key=lambda message: (message.modified, self._sequence[message.id]))
        return [message.model_copy(deep=True) for message in ordered]

    def _store_message(self, message: AgentInstanceMessage) -> None:
        if message.id not in self._sequence:
            self._sequence[message.id] = next(self._counter)
        self._messages.setdefault(message.agent_id, {})[message.id] = message.model_copy(deep=True)

    async def create_instance(self, instance: AgentInstance) -> AgentInstance:
        async with self._lock:
            self._instances[instance.id] = instance.model_copy(update={"messages": []}, deep=True)
            for message in instance.messages:
                self._store_message(message)
        logger.debug("Created instance", agent_id=instance.id)
        return instance

    async def get_instance(self, agent_id: str) -> Optional[AgentInstance]:
        async with self._lock:
            instance = self._instances.get(agent_id)
            if instance is None:
                return None
            return instance.model_copy(update={"messages": self._sorted_messages(agent_id)}, deep=True)

    async def update_instance(self, agent_id: str, **fields: Any) -> AgentInstance:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            instance = self._instances.get(agent_id)
            if instance is None:
                raise AgentNotFoundError(f"Agent instance {agent_id} not found", details={"agent_id": agent_id})
            updated = instance.model_copy(update={**fields, "modified": utc_now()}, deep=True)
            self._instances[agent_id] = updated
            return updated.model_copy(update={"messages": self._sorted_messages(agent_id)}, deep=True)

    async def delete_instance(self, agent_id: str) -> bool:
        async with self._lock:
            if self._instances.pop(agent_id, None) is None:
                return False
            for message_id in self._messages.pop(agent_id, {}):
                self._sequence.pop(message_id, None)
        logger.debug("Deleted instance", agent_id=agent_id)
        return True

    async def list_instances(
        self,
        page: int = 1,
        page_size: int = 20,
        closed: Optional[bool] = None,
        search_name: Optional[str] = None,
    ) -> List[AgentInstance]:
        async with self._lock:
            instances = list(self._instances.values())

        if closed is not None:
            instances = [instance for instance in instances if instance.closed == closed]
        if search_name:
            needle = search_name.lower()
            instances = [instance for instance in instances if needle in instance.name.lower()]

        instances.sort(key=lambda instance: instance.created, reverse=True)
        start = (max(page, 1) - 1) * page_size
        return [instance.model_copy(deep=True) for instance in instances[start:start + page_size]]

    async def save_message(self, message: AgentInstanceMessage) -> AgentInstanceMessage:
        async with self._lock:
            if message.agent_id not in self._instances:
                raise AgentNotFoundError(f"Agent instance {message.agent_id} not found",
                                         details={"agent_id": message.agent_id})
            self._store_message(message)
        return message

    async def get_message(self, message_id: str) -> Optional[AgentInstanceMessage]:
        async with self._lock:
            for messages in self._messages.values():
                if message_id in messages:
                    return messages[message_id].model_copy(deep=True)
        return None
