"""Tests for AgentInstanceService: lifecycle, turns, cancellation and subscriptions."""

import asyncio

import pytest

from domain.exceptions import (
    AgentDefinitionNotFoundError, AgentError, AgentNotFoundError, FrameworkNotFoundError,
)
from domain.models.agent import AgentInstance, AgentInstanceLatestStatus, AgentInstanceMessage
from domain.models.agent_state import AgentState, MessageRole

from tests.conftest import WIKI_TOOL_CALL, FakeProvider


class TestAgentLifecycle:
    """Create, read, update, list and delete."""

    @pytest.mark.asyncio
    async def test_create_agent_uses_default_definition(self, make_service, provider):
        """Test that an instance is created from the default definition."""
        service = make_service(provider)

        agent = await service.create_agent()

        assert agent.agent_def_id == "task-agent"
        assert agent.name.startswith("Task Agent - ")
        stored = await service.get_agent(agent.id)
        assert stored.id == agent.id
        assert stored.messages == []

    @pytest.mark.asyncio
    async def test_create_agent_unknown_definition(self, make_service, provider):
        """Test that an unknown definition id is rejected."""
        service = make_service(provider)

        with pytest.raises(AgentDefinitionNotFoundError):
            await service.create_agent("missing")

    @pytest.mark.asyncio
    async def test_get_unknown_agent_raises(self, make_service, provider):
        service = make_service(provider)

        with pytest.raises(AgentNotFoundError):
            await service.get_agent("nope")

    @pytest.mark.asyncio
    async def test_update_agent_stores_only_new_messages(self, make_service, provider):
        """Test that known messages are not written again."""
        service = make_service(provider)
        agent = await service.create_agent()
        first = AgentInstanceMessage(agent_id=agent.id, role=MessageRole.USER, content="first")
        await service.update_agent(agent.id, messages=[first])

        edited = first.model_copy(update={"content": "edited"})
        second = AgentInstanceMessage(agent_id=agent.id, role=MessageRole.USER, content="second")
        updated = await service.update_agent(agent.id, messages=[edited, second], name="Renamed")

        assert updated.name == "Renamed"
        assert [message.content for message in updated.messages] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_get_agents_filters_and_pages(self, make_service, provider):
        service = make_service(provider)
        first = await service.create_agent()
        second = await service.create_agent()
        await service.close_agent(first.id)

        open_agents = await service.get_agents(closed=False)
        closed_agents = await service.get_agents(closed=True)
        first_page = await service.get_agents(page=1, page_size=1)

        assert [agent.id for agent in open_agents] == [second.id]
        assert [agent.id for agent in closed_agents] == [first.id]
        assert len(first_page) == 1

    @pytest.mark.asyncio
    async def test_delete_agent_removes_instance_and_closes_subscriptions(self, make_service, provider):
        """Test that deletion ends live subscriptions."""
        service = make_service(provider)
        agent = await service.create_agent()
        subscription = await service.subscribe(agent.id)

        await service.delete_agent(agent.id)

        received = [item async for item in subscription]
        assert [item.id for item in received] == [agent.id]
        with pytest.raises(AgentNotFoundError):
            await service.get_agent(agent.id)
        with pytest.raises(AgentNotFoundError):
            await service.delete_agent(agent.id)


class TestSendMessage:
    """Turns started through the service."""

    @pytest.mark.asyncio
    async def test_send_message_runs_turn_and_persists(self, make_service, streaming_handler):
        """Test that a turn stores user and assistant messages."""
        service = make_service(FakeProvider(["Hello!"]))
        agent = await service.create_agent()

        status = await service.send_message(agent.id, "Hi")
        await streaming_handler.flush_pending()

        assert status.state == AgentState.COMPLETED
        stored = await service.get_agent(agent.id)
        assert [(message.role, message.content) for message in stored.messages] == [
            (MessageRole.USER, "Hi"),
            (MessageRole.ASSISTANT, "Hello!"),
        ]
        assert stored.status.state == AgentState.COMPLETED
        assert not service.is_running(agent.id)

    @pytest.mark.asyncio
    async def test_send_message_with_tool_round(self, make_service, streaming_handler):
        service = make_service(FakeProvider([WIKI_TOOL_CALL, "Found them."]))
        agent = await service.create_agent()

        status = await service.send_message(agent.id, "Search the wiki")
        await streaming_handler.flush_pending()

        assert status.state == AgentState.COMPLETED
        stored = await service.get_agent(agent.id)
        assert [message.role for message in stored.messages] == [
            MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.ASSISTANT,
        ]

    @pytest.mark.asyncio
    async def test_send_message_attaches_file_metadata(self, make_service, streaming_handler):
        provider = FakeProvider(["Nice picture."])
        service = make_service(provider)
        agent = await service.create_agent()

        await service.send_message(agent.id, "Look", file={"data": "aGVsbG8=", "mime_type": "image/png"})

        stored = await service.get_agent(agent.id)
        assert stored.messages[0].metadata["file"]["mime_type"] == "image/png"
        last_prompt = provider.calls[0][-1]
        assert last_prompt.content[0]["image_url"]["url"] == "data:image/png;base64,aGVsbG8="
        assert last_prompt.content[1] == {"type": "text", "text": "Look"}

    @pytest.mark.asyncio
    async def test_send_message_to_closed_agent_is_rejected(self, make_service, provider):
        service = make_service(provider)
        agent = await service.create_agent()
        await service.close_agent(agent.id)

        with pytest.raises(AgentError) as exc_info:
            await service.send_message(agent.id, "Hi")

        assert exc_info.value.error_code == "agent_closed"

    @pytest.mark.asyncio
    async def test_send_message_unknown_handler(self, make_service, provider, definition):
        """Test that a definition pointing at a missing framework fails clearly."""
        service = make_service(provider)
        agent = await service.create_agent()
        service.frameworks.clear()

        with pytest.raises(FrameworkNotFoundError):
            await service.send_message(agent.id, "Hi")

    @pytest.mark.asyncio
    async def test_framework_crash_marks_instance_failed(self, make_service, provider):
        """Test that an unexpected framework error fails the instance."""
        service = make_service(provider)
        agent = await service.create_agent()

        class ExplodingFramework:
            handler_id = "basicPromptConcatHandler"

            async def run(self, context, on_status=None):
                raise RuntimeError("boom")

        service.frameworks["basicPromptConcatHandler"] = ExplodingFramework()

        status = await service.send_message(agent.id, "Hi")

        assert status.state == AgentState.FAILED
        stored = await service.get_agent(agent.id)
        assert stored.status.state == AgentState.FAILED
        assert not service.is_running(agent.id)


class TestCancelAgent:
    """Cancellation through the service."""

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, make_service, streaming_handler):
        """Test that repeated cancels write a single canceled status."""
        provider = FakeProvider(["This answer will be interrupted"], hold=True)
        service = make_service(provider)
        agent = await service.create_agent()

        written_states = []
        original_update = streaming_handler.update_agent

        async def recording_update(agent_id, **fields):
            if "status" in fields:
                written_states.append(fields["status"].state)
            return await original_update(agent_id, **fields)

        streaming_handler.update_agent = recording_update

        task = asyncio.create_task(service.send_message(agent.id, "Tell me a story"))
        await provider.started.wait()
        await service.cancel_agent(agent.id)
        await service.cancel_agent(agent.id)
        provider.release.set()
        status = await task

        assert status.state == AgentState.CANCELED
        assert written_states.count(AgentState.CANCELED) == 1
        assert written_states[-1] == AgentState.CANCELED
        assert provider.cancelled == ["req-1"]
        stored = await service.get_agent(agent.id)
        assert stored.status.state == AgentState.CANCELED

    @pytest.mark.asyncio
    async def test_next_turn_after_cancel_keeps_partial_answer(self, make_service, streaming_handler):
        """Test that a new turn answers in a new message after the cut-off one."""
        provider = FakeProvider(["This answer will be interrupted", "Second answer"], hold=True)
        service = make_service(provider)
        agent = await service.create_agent()

        task = asyncio.create_task(service.send_message(agent.id, "Tell me a story"))
        await provider.started.wait()
        await service.cancel_agent(agent.id)
        provider.release.set()
        await task
        await streaming_handler.flush_pending()
        partial = (await service.get_agent(agent.id)).messages[-1]

        status = await service.send_message(agent.id, "Try again")
        await streaming_handler.flush_pending()

        assert status.state == AgentState.COMPLETED
        stored = await service.get_agent(agent.id)
        assert [(message.role, message.content) for message in stored.messages] == [
            (MessageRole.USER, "Tell me a story"),
            (MessageRole.ASSISTANT, "This answer wil"),
            (MessageRole.USER, "Try again"),
            (MessageRole.ASSISTANT, "Second answer"),
        ]
        assert stored.messages[1].id == partial.id
        assert stored.messages[1].metadata["interrupted"] is True
        assert stored.messages[3].id != partial.id

    @pytest.mark.asyncio
    async def test_cancel_without_running_turn_is_noop(self, make_service, provider):
        service = make_service(provider)
        agent = await service.create_agent()

        await service.cancel_agent(agent.id)

        stored = await service.get_agent(agent.id)
        assert stored.status.state == AgentState.COMPLETED


class TestSubscriptions:
    """Live updates of instances and messages."""

    @pytest.mark.asyncio
    async def test_instance_subscription_starts_with_current_state(self, make_service, provider):
        service = make_service(provider)
        agent = await service.create_agent()
        await service.update_agent(agent.id, name="Renamed")

        async with await service.subscribe(agent.id) as subscription:
            first = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        assert isinstance(first, AgentInstance)
        assert first.name == "Renamed"

    @pytest.mark.asyncio
    async def test_instance_subscription_sees_turn_updates(self, make_service, streaming_handler):
        service = make_service(FakeProvider(["Streaming reply"]))
        agent = await service.create_agent()
        subscription = await service.subscribe(agent.id)

        await service.send_message(agent.id, "Hi")
        await streaming_handler.flush_pending()
        subscription.close()
        snapshots = [item async for item in subscription]

        states = [snapshot.status.state for snapshot in snapshots]
        assert AgentState.WORKING in states
        assert states[-1] == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_message_subscription_seeded_from_store(self, make_service, streaming_handler):
        """Test that a late message subscriber gets the stored message."""
        service = make_service(FakeProvider(["Done"]))
        agent = await service.create_agent()
        await service.send_message(agent.id, "Hi")
        await streaming_handler.flush_pending()
        stored = await service.get_agent(agent.id)
        user_message = stored.messages[0]

        async with await service.subscribe(agent.id, user_message.id) as subscription:
            first = await asyncio.wait_for(subscription.__anext__(), timeout=1)

        assert isinstance(first, AgentInstanceLatestStatus)
        assert first.message.id == user_message.id
        assert first.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_final_status_published_on_message_channel(self, make_service, streaming_handler):
        provider = FakeProvider(["Final words"])
        service = make_service(provider)
        agent = await service.create_agent()

        status = await service.send_message(agent.id, "Hi")

        async with await service.subscribe(agent.id, status.message.id) as subscription:
            latest = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert latest.state == AgentState.COMPLETED
        assert latest.message.content == "Final words"


class TestConcatPrompt:
    """Prompt previews."""

    @pytest.mark.asyncio
    async def test_concat_prompt_preview(self, make_service, provider, definition):
        service = make_service(provider)
        messages = [AgentInstanceMessage(agent_id="preview", role=MessageRole.USER, content="Hello")]

        result = await service.concat_prompt(definition.framework_config, messages)

        assert result.flat_prompts[-1].content == "Hello"
        assert result.processed_prompts[0].id == "system"

    def test_get_handler_config_schema(self, make_service, provider):
        service = make_service(provider)

        schema = service.get_handler_config_schema("basicPromptConcatHandler")

        assert "wikiSearch" in schema["tools"]
        assert schema["tools"]["fullReplacement"]["parameterKey"] == "fullReplacementParam"
        with pytest.raises(FrameworkNotFoundError):
            service.get_handler_config_schema("unknown")
