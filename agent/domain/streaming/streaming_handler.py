from typing import Dict, Any, Optional, Tuple
import asyncio
import structlog

from domain.exceptions import AgentError, PersistenceError
from domain.models.agent import AgentInstance, AgentInstanceLatestStatus, AgentInstanceMessage
from domain.models.agent_state import AgentState
from domain.repositories.agent_repository import AgentRepository
from domain.streaming.update_broadcaster import UpdateBroadcaster, channel_key

logger = structlog.get_logger(__name__)


class StreamingHandler:
    """Persists conversation updates and streams them to subscribers

    Streaming output is written through a per-message debounce: every call
    pushes the new content to subscribers at once, while the store only sees
    the last payload once the message has been quiet for ``debounce_ms``.
    """

    def __init__(
        self,
        repository: AgentRepository,
        broadcaster: Optional[UpdateBroadcaster] = None,
        debounce_ms: int = 300,
    ):
        self.repository = repository
        self.broadcaster = broadcaster or UpdateBroadcaster()
        self.debounce_ms = debounce_ms
        self._pending: Dict[str, Tuple[asyncio.Task, AgentInstanceMessage, str]] = {}

    async def save_message(self, message: AgentInstanceMessage) -> AgentInstanceMessage:
        """Write a message now; supersedes any debounced write of the same id"""

        self.cancel_pending(message.id)
        try:
            saved = await self.repository.save_message(message)
        except PersistenceError as e:
            logger.error("Failed to save message", message_id=message.id, agent_id=message.agent_id, error=e.message)
            raise
        except Exception as e:
            logger.error("Failed to save message", message_id=message.id, agent_id=message.agent_id, error=str(e))
            raise PersistenceError(str(e), details={"message_id": message.id}) from e

        await self.notify_agent_update(message.agent_id)
        return saved

    def debounce_update_message(
        self,
        message: AgentInstanceMessage,
        agent_id: str,
        debounce_ms: Optional[int] = None,
    ) -> None:
        """Push a message to subscribers now and write it once it settles

        A zero delay writes on the next loop iteration.
        """

        snapshot = message.model_copy(deep=True)
        self.publish_status(
            agent_id,
            message.id,
            AgentInstanceLatestStatus(state=AgentState.WORKING, message=snapshot, modified=snapshot.modified),
        )

        self.cancel_pending(message.id)
        delay = (self.debounce_ms if debounce_ms is None else debounce_ms) / 1000
        task = asyncio.create_task(self._write_later(snapshot, agent_id, delay))
        self._pending[message.id] = (task, snapshot, agent_id)

    async def _write_later(self, snapshot: AgentInstanceMessage, agent_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        pending = self._pending.get(snapshot.id)
        if pending is not None and pending[0] is asyncio.current_task():
            del self._pending[snapshot.id]
        try:
            await self.repository.save_message(snapshot)
            await self.notify_agent_update(agent_id)
        except Exception as e:
            # Background write, nothing awaits it
            logger.error("Debounced message write failed", message_id=snapshot.id, agent_id=agent_id, error=str(e))

    def cancel_pending(self, message_id: Optional[str] = None) -> None:
        """Drop a scheduled write, or all of them when no id is given"""

        message_ids = [message_id] if message_id is not None else list(self._pending)
        for pending_id in message_ids:
            pending = self._pending.pop(pending_id, None)
            if pending is not None:
                pending[0].cancel()

    def cancel_agent_pending(self, agent_id: str) -> None:
        for message_id, (_, _, pending_agent_id) in list(self._pending.items()):
            if pending_agent_id == agent_id:
                self.cancel_pending(message_id)

    async def flush_pending(self) -> None:
        """Write every scheduled message immediately"""

        pending = list(self._pending.values())
        self._pending.clear()
        for task, snapshot, agent_id in pending:
            task.cancel()
            try:
                await self.repository.save_message(snapshot)
            except Exception as e:
                logger.error("Failed to flush message", message_id=snapshot.id, agent_id=agent_id, error=str(e))
        if pending:
            logger.debug("Flushed pending message writes", count=len(pending))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def get_agent(self, agent_id: str) -> Optional[AgentInstance]:
        return await self.repository.get_instance(agent_id)

    async def update_agent(self, agent_id: str, **fields: Any) -> AgentInstance:
        try:
            agent = await self.repository.update_instance(agent_id, **fields)
        except AgentError:
            raise
        except Exception as e:
            logger.error("Failed to update agent", agent_id=agent_id, error=str(e))
            raise PersistenceError(str(e), details={"agent_id": agent_id}) from e
        await self.notify_agent_update(agent_id, agent)
        return agent

    async def notify_agent_update(self, agent_id: str, agent: Optional[AgentInstance] = None) -> None:
        """Publish the current state of an instance to its subscribers"""

        if self.broadcaster.subscriber_count(channel_key(agent_id)) == 0 and agent is None:
            return
        if agent is None:
            agent = await self.repository.get_instance(agent_id)
        if agent is not None:
            self.broadcaster.publish(channel_key(agent_id), agent)

    def publish_status(self, agent_id: str, message_id: str, status: AgentInstanceLatestStatus) -> None:
        self.broadcaster.publish(channel_key(agent_id, message_id), status)
