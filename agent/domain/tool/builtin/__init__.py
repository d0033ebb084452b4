from typing import Optional, Protocol

from domain.tool.builtin.dynamic_position import create_dynamic_position_tool
from domain.tool.builtin.full_replacement import create_full_replacement_tool
from domain.tool.builtin.message_management import TOOL_NAME as MESSAGE_MANAGEMENT, message_management_tool
from domain.tool.builtin.wiki_operation import WikiOperationBackend, create_wiki_operation_tool
from domain.tool.builtin.wiki_search import WikiSearchBackend, create_wiki_search_tool
from domain.tool.tool_registry import ToolRegistry


class WikiBackend(WikiSearchBackend, WikiOperationBackend, Protocol):
    """A wiki that can be searched and written to"""


def register_builtin_tools(registry: ToolRegistry, wiki_backend: Optional[WikiBackend] = None) -> ToolRegistry:
    """Register the tools every deployment ships with

    Wiki search and wiki operation are only available when a wiki backend
    is supplied.
    """
    registry.register_infrastructure_tool(MESSAGE_MANAGEMENT, message_management_tool)
    registry.register_tool(create_full_replacement_tool())
    registry.register_tool(create_dynamic_position_tool())
    if wiki_backend is not None:
        registry.register_tool(create_wiki_search_tool(wiki_backend))
        registry.register_tool(create_wiki_operation_tool(wiki_backend))
    return registry
