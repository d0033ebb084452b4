from typing import Dict, Optional
from fastapi import WebSocket
import asyncio
import structlog

from domain.models.base import utc_now
from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and the agent each one watches"""

    def __init__(self, stale_after_s: float = 300.0):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self.stale_after_s = stale_after_s
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str, agent_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[connection_id] = websocket
            self.connection_metadata[connection_id] = {
                "agent_id": agent_id,
                "connected_at": utc_now(),
                "last_activity": utc_now(),
            }

        await self.send_event(
            connection_id,
            ConnectionEvent(status="connected", agent_id=agent_id, session_id=connection_id),
        )

        logger.info("WebSocket connected", connection_id=connection_id, agent_id=agent_id)

    async def disconnect(self, connection_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            ws = self.active_connections.pop(connection_id, None)
            self.connection_metadata.pop(connection_id, None)

        if ws is None:
            return
        try:
            await ws.close()
        except RuntimeError as e:
            # Already closed by the client
            logger.debug("WebSocket already closed", connection_id=connection_id, error=str(e))

        logger.info("WebSocket disconnected", connection_id=connection_id)

    def touch(self, connection_id: str) -> None:
        if connection_id in self.connection_metadata:
            self.connection_metadata[connection_id]["last_activity"] = utc_now()

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific connection"""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected connection", connection_id=connection_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))
            self.touch(connection_id)
            return True

        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a connection"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            session_id=connection_id,
        )
        await self.send_event(connection_id, error_event)

    async def disconnect_stale(self) -> int:
        """Close connections idle for longer than ``stale_after_s``"""
        now = utc_now()
        stale = [
            connection_id
            for connection_id, metadata in list(self.connection_metadata.items())
            if (now - metadata["last_activity"]).total_seconds() > self.stale_after_s
        ]
        for connection_id in stale:
            logger.warning("Disconnecting stale connection", connection_id=connection_id)
            await self.disconnect(connection_id)
        return len(stale)

    async def health_check(self, interval_s: float = 60.0):
        """Periodic clean-up of stale connections"""
        while True:
            try:
                await self.disconnect_stale()
            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(interval_s)
