"""Tests for the wiki search tool, its in-memory backend and response post-processing."""

import pytest

from domain.hooks.contexts import AgentFrameworkContext
from domain.models.agent import AgentInstance, FrameworkConfig
from domain.prompt.response_concat import response_concat
from domain.tool.builtin.wiki_search import (
    WikiSearchToolParameter, WikiUpdateEmbeddingsToolParameter, search_wiki, update_wiki_embeddings,
)

AI_CONFIG = {"provider": "fake", "model": "embedder"}


class TestSearchWiki:
    """Filter and vector search over the in-memory backend."""

    @pytest.mark.asyncio
    async def test_filter_search(self, wiki_backend):
        parameters = WikiSearchToolParameter(workspace_name="My Wiki", filter="[tag[Example]]")

        result = await search_wiki(wiki_backend, parameters)

        assert result.success
        assert result.data.startswith("Found 2 notes, showing 2")
        assert "**Tiddler: Getting Started**" in result.data
        assert "Private" not in result.data
        assert result.metadata["workspace_id"] == "wiki-1"

    @pytest.mark.asyncio
    async def test_filter_steps_narrow_results(self, wiki_backend):
        parameters = WikiSearchToolParameter(workspace_name="wiki-1", filter="[tag[Example]][search[tools]]",
                                             limit=1)

        result = await search_wiki(wiki_backend, parameters)

        assert "**Tiddler: Agents**" in result.data
        assert result.metadata["result_count"] == 1

    @pytest.mark.asyncio
    async def test_no_match_is_a_successful_empty_result(self, wiki_backend):
        parameters = WikiSearchToolParameter(workspace_name="My Wiki", filter="[tag[Missing]]")

        result = await search_wiki(wiki_backend, parameters)

        assert result.success
        assert result.metadata["result_count"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parameters,error", [
        ({"workspaceName": "Other Wiki", "filter": "[tag[Example]]"}, 'Workspace "Other Wiki" not found'),
        ({"workspaceName": "My Wiki"}, "requires a filter"),
        ({"workspaceName": "My Wiki", "searchType": "vector"}, "requires a query"),
    ])
    async def test_invalid_requests(self, wiki_backend, parameters, error):
        result = await search_wiki(wiki_backend, WikiSearchToolParameter.model_validate(parameters), AI_CONFIG)

        assert not result.success
        assert error in result.error

    @pytest.mark.asyncio
    async def test_vector_search_after_embedding(self, wiki_backend):
        """Test that similarity search only sees embedded notes."""
        query = WikiSearchToolParameter(workspace_name="My Wiki", search_type="vector",
                                        query="agents call tools", threshold=0.2)

        before = await search_wiki(wiki_backend, query, AI_CONFIG)
        updated = await update_wiki_embeddings(
            wiki_backend, WikiUpdateEmbeddingsToolParameter(workspace_name="My Wiki"), AI_CONFIG
        )
        after = await search_wiki(wiki_backend, query, AI_CONFIG)

        assert before.metadata["result_count"] == 0
        assert updated.metadata["total_notes"] == 3
        assert "**Tiddler: Agents**" in after.data
        assert "Similarity:" in after.data

    @pytest.mark.asyncio
    async def test_vector_search_needs_ai_config(self, wiki_backend):
        query = WikiSearchToolParameter(workspace_name="My Wiki", search_type="vector", query="agents")

        result = await search_wiki(wiki_backend, query, None)

        assert result.error == "Vector search requires an AI configuration"


class TestResponseConcat:
    """Post-processing through the response template."""

    @pytest.mark.asyncio
    async def test_llm_response_fills_response_node(self, registry):
        config = FrameworkConfig.model_validate({
            "response": [{"id": "answer"}, {"id": "footer", "text": "-- sent by the agent"}],
            "tools": [{"id": "fill", "toolId": "fullReplacement",
                       "fullReplacementParam": {"targetId": "answer", "sourceType": "llmResponse"}}],
        })
        hooks, tool_configs = registry.create_hooks_with_tools(config)
        context = AgentFrameworkContext(agent=AgentInstance(agent_def_id="d", name="n"), agent_def=None)

        result = await response_concat(config, "The answer.", context, hooks, tool_configs)

        assert result.processed_response == "The answer.\n\n-- sent by the agent"
        assert result.yield_next_round_to is None

    @pytest.mark.asyncio
    async def test_empty_template_keeps_raw_response(self, registry):
        config = FrameworkConfig()
        hooks, tool_configs = registry.create_hooks_with_tools(config)
        context = AgentFrameworkContext(agent=AgentInstance(agent_def_id="d", name="n"), agent_def=None)

        result = await response_concat(config, "Raw text", context, hooks, tool_configs)

        assert result.processed_response == "Raw text"
