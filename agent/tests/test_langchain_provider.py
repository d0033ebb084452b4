"""Tests for the LangChain provider adapter and config merging."""

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel, GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage

from domain.provider.llm_provider import merge_provider_config
from infrastructure.providers.langchain_provider import LangChainChatProvider, load_chat_model

PROMPTS = [HumanMessage(content="Hello")]


async def collect(provider, config=None):
    return [chunk async for chunk in provider.generate(PROMPTS, config or {})]


class TestLangChainChatProvider:
    """Streaming contract on top of LangChain fake models."""

    @pytest.mark.asyncio
    async def test_updates_are_cumulative_and_end_with_done(self):
        provider = LangChainChatProvider(GenericFakeChatModel(messages=iter([AIMessage(content="hello big world")])))

        chunks = await collect(provider)

        assert [chunk.status for chunk in chunks[:-1]] == ["update"] * (len(chunks) - 1)
        assert chunks[-1].status == "done"
        assert chunks[-1].content == "hello big world"
        assert chunks[-2].content == "hello big world"
        assert chunks[0].content == "hello"
        assert len({chunk.request_id for chunk in chunks}) == 1

    @pytest.mark.asyncio
    async def test_model_failure_becomes_error_chunk(self):
        """Test that an exception mid-stream ends with an error chunk."""
        provider = LangChainChatProvider(
            FakeListChatModel(responses=["abc"], error_on_chunk_number=1),
            provider_name="fake",
        )

        chunks = await collect(provider)

        assert [chunk.status for chunk in chunks] == ["update", "error"]
        assert chunks[-1].content == "a"
        assert chunks[-1].error_detail.name == "FakeListChatModelError"
        assert chunks[-1].error_detail.provider == "fake"

    @pytest.mark.asyncio
    async def test_cancel_stops_the_stream(self):
        provider = LangChainChatProvider(GenericFakeChatModel(messages=iter([AIMessage(content="one two three")])))
        received = []

        async for chunk in provider.generate(PROMPTS, {}):
            received.append(chunk)
            await provider.cancel(chunk.request_id)

        assert [chunk.content for chunk in received] == ["one"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_request_is_ignored(self):
        provider = LangChainChatProvider(FakeListChatModel(responses=["ok"]))

        await provider.cancel("req-unknown")

        assert (await collect(provider))[-1].content == "ok"

    @pytest.mark.asyncio
    async def test_default_config(self):
        provider = LangChainChatProvider(
            FakeListChatModel(responses=["ok"]),
            provider_name="openai",
            model_name="gpt-test",
            model_parameters={"temperature": 0.2},
        )

        assert await provider.get_default_config() == {
            "provider": "openai",
            "model": "gpt-test",
            "model_parameters": {"temperature": 0.2},
        }


class TestLoadChatModel:

    def test_loads_class_by_path(self):
        model = load_chat_model(
            "langchain_core.language_models.fake_chat_models:FakeListChatModel",
            {"responses": ["hi"]},
        )

        assert isinstance(model, FakeListChatModel)

    def test_rejects_path_without_class(self):
        with pytest.raises(ValueError):
            load_chat_model("langchain_core.language_models.fake_chat_models")

    def test_rejects_non_chat_model(self):
        with pytest.raises(TypeError):
            load_chat_model("langchain_core.messages:HumanMessage", {"content": "not a model"})


class TestMergeProviderConfig:

    def test_layers_merge_recursively(self):
        merged = merge_provider_config(
            {"provider": "openai", "model": "base", "model_parameters": {"temperature": 0.1, "max_tokens": 100}},
            {"model": "definition", "model_parameters": {"temperature": 0.7}},
            {"model_parameters": {"max_tokens": 500}, "provider": None},
        )

        assert merged == {
            "provider": "openai",
            "model": "definition",
            "model_parameters": {"temperature": 0.7, "max_tokens": 500},
        }

    def test_inputs_are_not_mutated(self):
        defaults = {"model_parameters": {"temperature": 0.1}}

        merge_provider_config(defaults, {"model_parameters": {"temperature": 0.9}}, None)

        assert defaults == {"model_parameters": {"temperature": 0.1}}
