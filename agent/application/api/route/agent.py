from typing import Annotated, Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from pydantic import Field

from application.services.agent_definition_service import AgentDefinitionService
from application.services.agent_instance_service import AgentInstanceService
from domain.exceptions import AgentError, ToolNotFoundError
from domain.models.agent import AgentInstanceMessage, FrameworkConfig
from domain.models.base import CamelModel
from domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_ROLE_BY_MESSAGE_TYPE = {"system": "system", "human": "user", "ai": "assistant"}


def get_instance_service(request: Request) -> AgentInstanceService:
    return request.app.state.container.instance_service


def get_definition_service(request: Request) -> AgentDefinitionService:
    return request.app.state.container.definition_service


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.container.registry


InstanceService = Annotated[AgentInstanceService, Depends(get_instance_service)]
DefinitionService = Annotated[AgentDefinitionService, Depends(get_definition_service)]
Registry = Annotated[ToolRegistry, Depends(get_tool_registry)]


class CreateAgentRequest(CamelModel):
    definition_id: Optional[str] = None


class UpdateAgentRequest(CamelModel):
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    ai_api_config: Optional[Dict[str, Any]] = None
    closed: Optional[bool] = None
    messages: List[AgentInstanceMessage] = Field(default_factory=list)


class SendMessageRequest(CamelModel):
    content: str
    file: Optional[Dict[str, Any]] = Field(None, description="Attachment: path or base64 data, plus mime type")


class ConcatPromptRequest(CamelModel):
    definition_id: Optional[str] = None
    framework_config: Optional[FrameworkConfig] = None
    messages: List[AgentInstanceMessage] = Field(default_factory=list)


async def run_turn(service: AgentInstanceService, agent_id: str, content: str,
                   file: Optional[Dict[str, Any]]) -> None:
    """Run a turn after the response went out; errors only reach the log"""
    try:
        await service.send_message(agent_id, content, file=file)
    except AgentError as e:
        logger.warning("Turn rejected", agent_id=agent_id, error_code=e.error_code, error=e.message)


# Agent instances

@router.post("/agents", status_code=status.HTTP_201_CREATED, tags=["Agents"])
async def create_agent(body: CreateAgentRequest, service: InstanceService):
    agent = await service.create_agent(body.definition_id)
    return agent.to_wire()


@router.get("/agents", tags=["Agents"])
async def list_agents(
    service: InstanceService,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200, alias="pageSize"),
    closed: Optional[bool] = None,
    search: Optional[str] = None,
):
    agents = await service.get_agents(page, page_size, closed=closed, search_name=search)
    return {"items": [agent.to_wire() for agent in agents], "page": page, "pageSize": page_size}


@router.get("/agents/{agent_id}", tags=["Agents"])
async def get_agent(agent_id: str, service: InstanceService):
    agent = await service.get_agent(agent_id)
    return agent.to_wire()


@router.patch("/agents/{agent_id}", tags=["Agents"])
async def update_agent(agent_id: str, body: UpdateAgentRequest, service: InstanceService):
    fields = body.model_dump(exclude_unset=True, exclude={"messages"})
    for message in body.messages:
        message.agent_id = agent_id
    agent = await service.update_agent(agent_id, messages=body.messages, **fields)
    return agent.to_wire()


@router.delete("/agents/{agent_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Agents"])
async def delete_agent(agent_id: str, service: InstanceService):
    await service.delete_agent(agent_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/agents/{agent_id}/messages", status_code=status.HTTP_202_ACCEPTED, tags=["Agents"])
async def send_message(agent_id: str, body: SendMessageRequest, service: InstanceService,
                       background_tasks: BackgroundTasks):
    """Start a turn; progress is delivered over the WebSocket"""

    agent = await service.get_agent(agent_id)
    if agent.closed:
        raise AgentError(f"Agent instance {agent_id} is closed", error_code="agent_closed",
                         details={"agent_id": agent_id})
    if service.is_running(agent_id):
        raise AgentError(f"Agent instance {agent_id} is already answering", error_code="agent_busy",
                         details={"agent_id": agent_id})

    background_tasks.add_task(run_turn, service, agent_id, body.content, body.file)
    return {"agentId": agent_id, "accepted": True}


@router.post("/agents/{agent_id}/cancel", status_code=status.HTTP_202_ACCEPTED, tags=["Agents"])
async def cancel_agent(agent_id: str, service: InstanceService):
    await service.get_agent(agent_id)
    await service.cancel_agent(agent_id)
    return {"agentId": agent_id, "cancelled": True}


@router.post("/agents/{agent_id}/close", tags=["Agents"])
async def close_agent(agent_id: str, service: InstanceService):
    await service.close_agent(agent_id)
    agent = await service.get_agent(agent_id)
    return agent.to_wire()


# Definitions and handlers

@router.get("/agent-definitions", tags=["Definitions"])
async def list_definitions(definitions: DefinitionService, search: Optional[str] = None):
    return [definition.to_wire() for definition in definitions.get_agent_defs(search)]


@router.get("/agent-definitions/{definition_id}", tags=["Definitions"])
async def get_definition(definition_id: str, definitions: DefinitionService):
    return definitions.get_agent_def(definition_id).to_wire()


@router.get("/handlers", tags=["Definitions"])
async def list_handlers(service: InstanceService):
    return [framework.get_info() for framework in service.frameworks.values()]


@router.get("/handlers/{handler_id}/config-schema", tags=["Definitions"])
async def get_handler_config_schema(handler_id: str, service: InstanceService):
    return service.get_handler_config_schema(handler_id)


@router.post("/prompts/concat", tags=["Definitions"])
async def concat_prompt(body: ConcatPromptRequest, service: InstanceService, definitions: DefinitionService):
    """Preview the flattened prompt for a definition and some messages"""

    framework_config = body.framework_config or definitions.get_agent_def(body.definition_id).framework_config
    result = await service.concat_prompt(framework_config, body.messages)
    return {
        "flatPrompts": [
            {"role": _ROLE_BY_MESSAGE_TYPE.get(message.type, message.type), "content": message.content}
            for message in result.flat_prompts
        ],
        "processedPrompts": [prompt.to_wire() for prompt in result.processed_prompts],
    }


# Tools

@router.get("/tools", tags=["Tools"])
async def list_tools(registry: Registry, search: Optional[str] = None):
    if search:
        return await registry.search_tools(search)
    return await registry.get_available_tools()


@router.get("/tools/{tool_id}", tags=["Tools"])
async def get_tool(tool_id: str, registry: Registry):
    info = await registry.get_tool_info(tool_id)
    if info is None:
        raise ToolNotFoundError(f"Tool {tool_id} not registered", details={"tool_id": tool_id})
    return info
