"""Tests for the context window helpers."""

from domain.context.message_filter import (
    filter_messages_by_duration, history_without_current_input, normalize_role,
)
from domain.models.agent import AgentInstanceMessage
from domain.models.agent_state import MessageRole


def message(content, role=MessageRole.USER, duration=None):
    return AgentInstanceMessage(agent_id="agent-1", role=role, content=content, duration=duration)


class TestFilterMessagesByDuration:
    """Messages drop out of the context once their rounds are used up."""

    def test_unbounded_messages_are_kept(self):
        messages = [message("a"), message("b"), message("c")]

        assert [m.content for m in filter_messages_by_duration(messages)] == ["a", "b", "c"]

    def test_duration_counts_rounds_from_the_end(self):
        """Test that duration 1 survives only as the newest message."""
        messages = [
            message("question"),
            message("tool call", MessageRole.ASSISTANT, duration=1),
            message("tool result", MessageRole.TOOL, duration=1),
        ]

        kept = filter_messages_by_duration(messages)

        assert [m.content for m in kept] == ["question", "tool result"]

    def test_duration_two_survives_one_more_round(self):
        messages = [message("old error", MessageRole.TOOL, duration=2), message("next")]

        assert [m.content for m in filter_messages_by_duration(messages)] == ["old error", "next"]

    def test_zero_duration_is_always_excluded(self):
        messages = [message("hidden", duration=0)]

        assert filter_messages_by_duration(messages) == []


class TestHistoryHelpers:

    def test_trailing_user_message_is_removed(self):
        messages = [message("hi"), message("hello", MessageRole.ASSISTANT), message("current")]

        history = history_without_current_input(messages)

        assert [m.content for m in history] == ["hi", "hello"]
        assert len(messages) == 3

    def test_history_ending_with_tool_result_is_kept(self):
        messages = [message("hi"), message("result", MessageRole.TOOL)]

        assert len(history_without_current_input(messages)) == 2

    def test_history_is_a_copy(self):
        messages = [message("hi"), message("answer", MessageRole.ASSISTANT)]

        history = history_without_current_input(messages)
        history[0].content = "changed"

        assert messages[0].content == "hi"

    def test_normalize_role(self):
        assert normalize_role(MessageRole.USER) == "user"
        assert normalize_role(MessageRole.TOOL) == "user"
        assert normalize_role(MessageRole.ASSISTANT) == "assistant"
        assert normalize_role(MessageRole.ERROR) == "assistant"
        assert normalize_role(None) == "assistant"
