"""Shared fixtures: a scripted provider, stores, tools and a wiki definition."""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest

from application.services.agent_definition_service import AgentDefinitionService
from application.services.agent_instance_service import AgentInstanceService
from domain.models.agent import AgentDefinition
from domain.orchestration.core.main_agent import AgentOrchestrator
from domain.provider.llm_provider import LLMProvider, ProviderErrorDetail, ProviderResponse
from domain.streaming.streaming_handler import StreamingHandler
from domain.tool.builtin import register_builtin_tools
from domain.tool.tool_executor import ToolExecutor
from domain.tool.tool_registry import ToolRegistry
from infrastructure.persistence.in_memory_repository import InMemoryAgentRepository
from infrastructure.wiki.in_memory_wiki import InMemoryWikiBackend

WIKI_TOOL_CALL = (
    '<tool_use name="wiki-search">'
    '{"workspaceName": "My Wiki", "searchType": "filter", "filter": "[tag[Example]]"}'
    "</tool_use>"
)

Round = Union[str, ProviderErrorDetail]


class FakeProvider(LLMProvider):
    """Plays back one scripted answer per round

    A string round streams in two cumulative update chunks and ends with
    ``done``; a ProviderErrorDetail round ends with an ``error`` chunk.
    With ``hold=True`` the first round pauses after its first chunk until
    ``release`` is set.
    """

    def __init__(self, rounds: Optional[List[Round]] = None, hold: bool = False):
        self.rounds = list(rounds or [])
        self.calls: List[List[Any]] = []
        self.configs: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.hold = hold
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def get_default_config(self) -> Dict[str, Any]:
        return {"provider": "fake", "model": "fake-model", "model_parameters": {"temperature": 0.1}}

    async def generate(self, flat_prompts, config, meta=None):
        self.calls.append(list(flat_prompts))
        self.configs.append(config)
        request_id = f"req-{len(self.calls)}"
        answer = self.rounds.pop(0) if self.rounds else "Nothing more to say."

        if isinstance(answer, ProviderErrorDetail):
            yield ProviderResponse(status="update", content="Partial", request_id=request_id)
            yield ProviderResponse(status="error", content="Partial", request_id=request_id, error_detail=answer)
            return

        middle = max(len(answer) // 2, 1)
        yield ProviderResponse(status="update", content=answer[:middle], request_id=request_id)
        if self.hold and len(self.calls) == 1:
            self.started.set()
            await self.release.wait()
        yield ProviderResponse(status="update", content=answer, request_id=request_id)
        yield ProviderResponse(status="done", content=answer, request_id=request_id)

    async def cancel(self, request_id: str) -> None:
        self.cancelled.append(request_id)


def build_definition(**overrides: Any) -> AgentDefinition:
    data = {
        "id": "task-agent",
        "name": "Task Agent",
        "aiApiConfig": {"model": "definition-model"},
        "frameworkConfig": {
            "prompts": [
                {
                    "id": "system",
                    "role": "system",
                    "children": [
                        {"id": "default-main", "text": "You are a helpful assistant."},
                        {"id": "default-tools", "text": "\nAvailable tools:"},
                    ],
                },
                {"id": "history", "children": [{"id": "default-history", "text": ""}]},
            ],
            "response": [{"id": "default-response"}],
            "tools": [
                {
                    "id": "history-replacement",
                    "toolId": "fullReplacement",
                    "fullReplacementParam": {"targetId": "default-history", "sourceType": "historyOfSession"},
                },
                {
                    "id": "wiki-search",
                    "toolId": "wikiSearch",
                    "wikiSearchParam": {
                        "sourceType": "wiki",
                        "toolListPosition": {"targetId": "default-tools", "position": "child"},
                        "toolResultDuration": 1,
                    },
                },
            ],
        },
    }
    data.update(overrides)
    return AgentDefinition.model_validate(data)


@pytest.fixture
def wiki_backend():
    backend = InMemoryWikiBackend()
    backend.add_workspace("wiki-1", "My Wiki", {
        "Getting Started": {"text": "Create an agent from a definition.", "tags": ["Example"]},
        "Agents": {"text": "Agents call tools while answering.", "tags": ["Example", "Agent"]},
        "Private": {"text": "Not part of the examples.", "tags": ["Draft"]},
    })
    return backend


@pytest.fixture
def registry(wiki_backend):
    return register_builtin_tools(ToolRegistry(ToolExecutor(timeout_s=5)), wiki_backend=wiki_backend)


@pytest.fixture
def repository():
    return InMemoryAgentRepository()


@pytest.fixture
def streaming_handler(repository):
    return StreamingHandler(repository, debounce_ms=10)


@pytest.fixture
def definition():
    return build_definition()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_service(repository, registry, streaming_handler, definition):
    """Build an AgentInstanceService around a given provider"""

    def factory(provider: LLMProvider) -> AgentInstanceService:
        orchestrator = AgentOrchestrator(registry, provider)
        return AgentInstanceService(
            repository,
            AgentDefinitionService(definitions=[definition], default_definition_id=definition.id),
            registry,
            streaming_handler,
            frameworks={orchestrator.handler_id: orchestrator},
            prompt_concat_timeout_s=5,
        )

    return factory
