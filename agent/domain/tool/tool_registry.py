from typing import Callable, Dict, List, Any, Optional, Tuple

import structlog

from domain.hooks.hook_registry import AgentFrameworkHooks
from domain.models.agent import FrameworkConfig, ToolConfig
from domain.tool.tool_definition import ToolDefinition
from domain.tool.tool_executor import ToolExecutor

logger = structlog.get_logger(__name__)

ToolFunction = Callable[[AgentFrameworkHooks], None]


class ToolRegistry:
    """Registry for managing available tools

    Built once at startup and handed to whoever needs it; every turn gets a
    fresh set of hooks from :meth:`create_hooks_with_tools`.
    """

    def __init__(self, tool_executor: Optional[ToolExecutor] = None):
        self.tools: Dict[str, ToolDefinition] = {}
        self.infrastructure_tools: Dict[str, ToolFunction] = {}
        self.tool_executor = tool_executor or ToolExecutor()

    def register_tool(self, definition: ToolDefinition) -> None:
        """Register a configurable tool; a second registration replaces the first"""

        if definition.tool_id in self.tools:
            logger.warning("Replacing registered tool", tool_id=definition.tool_id)
        definition.tool_executor = self.tool_executor
        self.tools[definition.tool_id] = definition
        logger.debug("Registered tool", tool_id=definition.tool_id, llm_tools=sorted(definition.llm_tool_schemas))

    def register_infrastructure_tool(self, name: str, tool: ToolFunction) -> None:
        """Register a tool that is active for every agent regardless of config"""

        self.infrastructure_tools[name] = tool
        logger.debug("Registered infrastructure tool", name=name)

    def get_tool_definition(self, tool_id: str) -> Optional[ToolDefinition]:
        return self.tools.get(tool_id)

    async def get_available_tools(self) -> List[Dict[str, Any]]:
        """Get all available tools"""

        return [definition.info() for definition in self.tools.values()]

    async def get_tool_info(self, tool_id: str) -> Optional[Dict[str, Any]]:
        """Get information about a specific tool"""

        definition = self.tools.get(tool_id)
        return definition.info() if definition else None

    async def search_tools(self, query: str) -> List[Dict[str, Any]]:
        """Search tools by name or description"""

        query_lower = query.lower()
        matching_tools = []

        for definition in self.tools.values():
            name = definition.display_name.lower()
            description = definition.description.lower()

            if query_lower in name or query_lower in description or query_lower in definition.tool_id.lower():
                matching_tools.append(definition.info())

        return matching_tools

    def get_config_schemas(self) -> Dict[str, Dict[str, Any]]:
        """JSON schemas of every tool's ``{tool_id}Param`` block, for config forms"""

        return {
            tool_id: {
                "title": definition.display_name,
                "description": definition.description,
                "parameterKey": definition.parameter_key,
                "schema": definition.config_schema.model_json_schema(),
            }
            for tool_id, definition in self.tools.items()
        }

    def create_hooks_with_tools(self, framework_config: FrameworkConfig) -> Tuple[AgentFrameworkHooks, List[ToolConfig]]:
        """Fresh hooks with infrastructure tools and every configured tool tapped once"""

        hooks = AgentFrameworkHooks()
        for tool in self.infrastructure_tools.values():
            tool(hooks)

        registered = set()
        tool_configs = list(framework_config.tools)
        for tool_config in tool_configs:
            if tool_config.tool_id in registered:
                continue
            definition = self.tools.get(tool_config.tool_id)
            if definition is None:
                logger.warning("Unknown tool in framework config", tool_id=tool_config.tool_id,
                               tool_config_id=tool_config.id)
                continue
            definition.tool(hooks)
            registered.add(tool_config.tool_id)

        return hooks, tool_configs
