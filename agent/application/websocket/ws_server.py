from typing import Any, Dict, Set
import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
import structlog

from application.services.agent_instance_service import AgentInstanceService
from domain.exceptions import AgentError
from .connection_manager import ConnectionManager
from .schema.events import (
    AgentUpdateEvent, CancelEvent, EventType, MessageStatusEvent, SubscribeMessageEvent, UserMessageEvent,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

# Turns outlive the connection that started them
_turn_tasks: Set[asyncio.Task] = set()


async def forward_agent_updates(service: AgentInstanceService, manager: ConnectionManager,
                                connection_id: str, agent_id: str):
    """Push instance snapshots to one connection until the channel closes"""
    async with await service.subscribe(agent_id) as subscription:
        async for agent in subscription:
            sent = await manager.send_event(connection_id, AgentUpdateEvent(payload=agent.to_wire(),
                                                                            session_id=connection_id))
            if not sent:
                return


async def forward_message_status(service: AgentInstanceService, manager: ConnectionManager,
                                 connection_id: str, agent_id: str, message_id: str):
    async with await service.subscribe(agent_id, message_id) as subscription:
        async for status in subscription:
            sent = await manager.send_event(connection_id, MessageStatusEvent(
                message_id=message_id, payload=status.to_wire(), session_id=connection_id,
            ))
            if not sent:
                return


async def run_user_turn(service: AgentInstanceService, manager: ConnectionManager,
                        connection_id: str, agent_id: str, event: UserMessageEvent):
    try:
        await service.send_message(agent_id, event.content, file=event.file)
    except AgentError as e:
        await manager.send_error(connection_id, e.message, e.error_code)


@router.websocket("/ws/agent/{agent_id}")
async def agent_websocket(websocket: WebSocket, agent_id: str):
    """Main WebSocket endpoint: live updates of one agent instance plus turn control"""

    container = websocket.app.state.container
    service: AgentInstanceService = container.instance_service
    manager: ConnectionManager = container.connection_manager

    if await service.repository.get_instance(agent_id) is None:
        await websocket.close(code=1008, reason="Unknown agent instance")
        return

    connection_id = str(uuid.uuid4())
    await manager.connect(websocket, connection_id, agent_id)

    tasks: Set[asyncio.Task] = set()
    watched_messages: Set[str] = set()

    def spawn(coro) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    spawn(forward_agent_updates(service, manager, connection_id, agent_id))

    try:
        while True:
            data: Dict[str, Any] = await websocket.receive_json()
            manager.touch(connection_id)

            try:
                event_type = data.get("type")

                if event_type == EventType.USER_MESSAGE:
                    task = asyncio.create_task(
                        run_user_turn(service, manager, connection_id, agent_id, UserMessageEvent(**data))
                    )
                    _turn_tasks.add(task)
                    task.add_done_callback(_turn_tasks.discard)

                elif event_type == EventType.CANCEL:
                    CancelEvent(**data)
                    await service.cancel_agent(agent_id)

                elif event_type == EventType.SUBSCRIBE_MESSAGE:
                    event = SubscribeMessageEvent(**data)
                    if event.message_id not in watched_messages:
                        watched_messages.add(event.message_id)
                        spawn(forward_message_status(service, manager, connection_id, agent_id, event.message_id))

                else:
                    await manager.send_error(connection_id, f"Unknown event type: {event_type}", "unknown_event")

            except ValidationError as e:
                await manager.send_error(connection_id, f"Invalid event: {e.errors()}", "invalid_event")
            except AgentError as e:
                logger.warning("Event rejected", connection_id=connection_id, error_code=e.error_code)
                await manager.send_error(connection_id, e.message, e.error_code)

    except WebSocketDisconnect:
        logger.info("Client disconnected", connection_id=connection_id, agent_id=agent_id)
    finally:
        for task in list(tasks):
            task.cancel()
        await manager.disconnect(connection_id)
