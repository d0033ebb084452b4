"""Tests for the update broadcaster and the debounced streaming handler."""

import asyncio

import pytest

from domain.models.agent import AgentInstance, AgentInstanceMessage
from domain.models.agent_state import MessageRole
from domain.streaming.streaming_handler import StreamingHandler
from domain.streaming.update_broadcaster import UpdateBroadcaster, channel_key
from infrastructure.persistence.in_memory_repository import InMemoryAgentRepository


class CountingRepository(InMemoryAgentRepository):
    """In-memory store that remembers every message write"""

    def __init__(self):
        super().__init__()
        self.writes = []

    async def save_message(self, message):
        self.writes.append((message.id, message.content))
        return await super().save_message(message)


@pytest.fixture
def counting_repository():
    return CountingRepository()


async def create_agent(repository, name="Test"):
    return await repository.create_instance(AgentInstance(agent_def_id="task-agent", name=name))


def assistant_message(agent_id, content):
    return AgentInstanceMessage(id="msg-1", agent_id=agent_id, role=MessageRole.ASSISTANT, content=content)


class TestUpdateBroadcaster:
    """Channels, replay and teardown."""

    @pytest.mark.asyncio
    async def test_new_subscriber_gets_latest_value_first(self):
        broadcaster = UpdateBroadcaster()
        key = channel_key("agent-1")
        broadcaster.publish(key, "old")
        broadcaster.publish(key, "current")

        subscription = broadcaster.subscribe(key)
        broadcaster.publish(key, "next")

        assert await subscription.__anext__() == "current"
        assert await subscription.__anext__() == "next"

    @pytest.mark.asyncio
    async def test_channels_are_separate(self):
        broadcaster = UpdateBroadcaster()
        instance = broadcaster.subscribe(channel_key("agent-1"))
        broadcaster.publish(channel_key("agent-1", "msg-1"), "message update")
        broadcaster.publish(channel_key("agent-2"), "other agent")

        instance.close()

        assert [value async for value in instance] == []

    @pytest.mark.asyncio
    async def test_close_agent_ends_iteration(self):
        broadcaster = UpdateBroadcaster()
        instance = broadcaster.subscribe(channel_key("agent-1"))
        message = broadcaster.subscribe(channel_key("agent-1", "msg-1"))
        broadcaster.publish(channel_key("agent-1"), "snapshot")

        broadcaster.close_agent("agent-1")

        assert [value async for value in instance] == ["snapshot"]
        assert [value async for value in message] == []
        assert not broadcaster.has_latest(channel_key("agent-1"))

    def test_subscriber_count_drops_on_close(self):
        broadcaster = UpdateBroadcaster()
        key = channel_key("agent-1")
        first = broadcaster.subscribe(key)
        broadcaster.subscribe(key)

        first.close()
        first.close()

        assert broadcaster.subscriber_count(key) == 1


class TestStreamingHandler:
    """Debounced writes and immediate saves."""

    @pytest.mark.asyncio
    async def test_rapid_updates_are_coalesced(self, counting_repository):
        """Test that only the last payload of a burst reaches the store."""
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository, debounce_ms=20)
        message = assistant_message(agent.id, "")

        for content in ["He", "Hello", "Hello there"]:
            message.content = content
            handler.debounce_update_message(message, agent.id)
        await asyncio.sleep(0.1)

        assert counting_repository.writes == [("msg-1", "Hello there")]
        assert handler.pending_count == 0

    @pytest.mark.asyncio
    async def test_every_update_is_published_at_once(self, counting_repository):
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository, debounce_ms=1000)
        subscription = handler.broadcaster.subscribe(channel_key(agent.id, "msg-1"))
        message = assistant_message(agent.id, "Hi")

        handler.debounce_update_message(message, agent.id)
        status = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        assert status.message.content == "Hi"
        assert counting_repository.writes == []
        handler.cancel_pending()

    @pytest.mark.asyncio
    async def test_save_supersedes_pending_write(self, counting_repository):
        """Test that an immediate save cancels the scheduled one."""
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository, debounce_ms=20)
        message = assistant_message(agent.id, "draft")
        handler.debounce_update_message(message, agent.id)

        message.content = "final"
        await handler.save_message(message)
        await asyncio.sleep(0.1)

        assert counting_repository.writes == [("msg-1", "final")]

    @pytest.mark.asyncio
    async def test_flush_pending_writes_now(self, counting_repository):
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository, debounce_ms=10_000)
        handler.debounce_update_message(assistant_message(agent.id, "streamed"), agent.id)

        await handler.flush_pending()

        assert counting_repository.writes == [("msg-1", "streamed")]
        stored = await counting_repository.get_instance(agent.id)
        assert stored.messages[0].content == "streamed"

    @pytest.mark.asyncio
    async def test_cancel_agent_pending_only_touches_that_agent(self, counting_repository):
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository, debounce_ms=10_000)
        other = await create_agent(counting_repository, "Other")
        handler.debounce_update_message(assistant_message(agent.id, "mine"), agent.id)
        handler.debounce_update_message(
            AgentInstanceMessage(id="msg-2", agent_id=other.id, role=MessageRole.ASSISTANT, content="theirs"),
            other.id,
        )

        handler.cancel_agent_pending(agent.id)
        await handler.flush_pending()

        assert counting_repository.writes == [("msg-2", "theirs")]

    @pytest.mark.asyncio
    async def test_update_agent_publishes_snapshot(self, counting_repository):
        agent = await create_agent(counting_repository)
        handler = StreamingHandler(counting_repository)
        subscription = handler.broadcaster.subscribe(channel_key(agent.id))

        await handler.update_agent(agent.id, name="Renamed")
        snapshot = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        assert snapshot.name == "Renamed"
