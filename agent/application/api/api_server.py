import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from application.api.route import agent as agent_routes
from application.services.agent_definition_service import AgentDefinitionService
from application.services.agent_instance_service import AgentInstanceService
from application.settings import Settings, get_settings
from application.websocket import ws_server
from application.websocket.connection_manager import ConnectionManager
from domain.exceptions import (
    AgentDefinitionNotFoundError, AgentError, AgentNotFoundError, FrameworkNotFoundError,
    PromptConcatTimeoutError, ToolNotFoundError,
)
from domain.orchestration.core.main_agent import AgentOrchestrator
from domain.provider.llm_provider import LLMProvider
from domain.repositories.agent_repository import AgentRepository
from domain.streaming.streaming_handler import StreamingHandler
from domain.tool.builtin import register_builtin_tools
from domain.tool.tool_executor import ToolExecutor
from domain.tool.tool_registry import ToolRegistry
from infrastructure.observability.logging import setup_logging
from infrastructure.persistence.in_memory_repository import InMemoryAgentRepository
from infrastructure.persistence.sqlite_repository import SqliteAgentRepository
from infrastructure.providers.langchain_provider import LangChainChatProvider, load_chat_model
from infrastructure.wiki.in_memory_wiki import InMemoryWikiBackend

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR_CODE = {
    AgentNotFoundError.error_code: 404,
    AgentDefinitionNotFoundError.error_code: 404,
    FrameworkNotFoundError.error_code: 404,
    ToolNotFoundError.error_code: 404,
    PromptConcatTimeoutError.error_code: 504,
    "agent_busy": 409,
    "agent_closed": 409,
}


@dataclass
class AgentCoreContainer:
    """Everything the HTTP and WebSocket surfaces need, wired once per app"""
    settings: Settings
    repository: AgentRepository
    registry: ToolRegistry
    provider: LLMProvider
    streaming_handler: StreamingHandler
    definition_service: AgentDefinitionService
    instance_service: AgentInstanceService
    connection_manager: ConnectionManager
    wiki_backend: Optional[InMemoryWikiBackend] = None


def build_repository(settings: Settings) -> AgentRepository:
    if settings.storage_backend == "sqlite":
        logger.info("Using SQLite agent store", path=settings.sqlite_path)
        return SqliteAgentRepository(settings.sqlite_path)
    return InMemoryAgentRepository()


def build_container(
    settings: Settings,
    provider: Optional[LLMProvider] = None,
    repository: Optional[AgentRepository] = None,
    wiki_backend: Optional[InMemoryWikiBackend] = None,
) -> AgentCoreContainer:
    """Wire repository, tools, provider and services from settings"""

    repository = repository or build_repository(settings)
    wiki_backend = wiki_backend or InMemoryWikiBackend()

    registry = ToolRegistry(ToolExecutor(timeout_s=settings.tool_timeout_s))
    register_builtin_tools(registry, wiki_backend=wiki_backend)

    if provider is None:
        provider = LangChainChatProvider(
            load_chat_model(settings.chat_model_class, settings.chat_model_kwargs),
            provider_name=settings.default_provider,
            model_name=settings.default_model,
            model_parameters=settings.model_parameters,
        )

    streaming_handler = StreamingHandler(repository, debounce_ms=settings.debounce_ms)
    definition_service = AgentDefinitionService(settings.definitions_dir, settings.default_definition_id)
    orchestrator = AgentOrchestrator(registry, provider)
    instance_service = AgentInstanceService(
        repository,
        definition_service,
        registry,
        streaming_handler,
        frameworks={orchestrator.handler_id: orchestrator},
        prompt_concat_timeout_s=settings.prompt_concat_timeout_s,
    )

    return AgentCoreContainer(
        settings=settings,
        repository=repository,
        registry=registry,
        provider=provider,
        streaming_handler=streaming_handler,
        definition_service=definition_service,
        instance_service=instance_service,
        connection_manager=ConnectionManager(),
        wiki_backend=wiki_backend,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: AgentCoreContainer = app.state.container
    logger.info("Agent core starting", environment=container.settings.environment,
                storage=container.settings.storage_backend)
    health_task = asyncio.create_task(container.connection_manager.health_check())
    yield

    health_task.cancel()
    for connection_id in list(container.connection_manager.active_connections):
        await container.connection_manager.disconnect(connection_id)
    await container.instance_service.shutdown()
    if isinstance(container.repository, SqliteAgentRepository):
        container.repository.close()
    logger.info("Agent core shutdown")


async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    status_code = STATUS_BY_ERROR_CODE.get(exc.error_code, 400)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, error_code=exc.error_code, error=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def create_app(settings: Optional[Settings] = None, container: Optional[AgentCoreContainer] = None) -> FastAPI:
    """FastAPI application factory"""

    settings = settings or (container.settings if container else get_settings())
    setup_logging(settings.log_level, settings.log_format, settings.service_name, settings.service_version,
                  settings.environment)
    container = container or build_container(settings)

    app = FastAPI(
        title="Agent Core API",
        description="Agent instances, conversation turns and live updates",
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AgentError, agent_error_handler)

    app.include_router(agent_routes.router)
    app.include_router(ws_server.router)

    @app.get("/health", tags=["Health"])
    async def health():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": settings.service_name,
            "activeConnections": len(container.connection_manager.active_connections),
            "definitions": len(container.definition_service.get_agent_defs()),
        }

    logger.info("Agent core application created")
    return app


if __name__ == "__main__":
    import uvicorn

    app_settings = get_settings()
    uvicorn.run(create_app(app_settings), host=app_settings.app_host, port=app_settings.app_port)
