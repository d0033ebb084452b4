from typing import Optional

from pydantic import Field

from domain.models.base import CamelModel
from domain.models.prompt import InjectPosition
from domain.tool.tool_definition import ToolDefinition, ToolHandlerContext, define_tool

TOOL_ID = "dynamicPosition"


class DynamicPositionParameter(CamelModel):
    target_id: str = Field(description="Id of the node the content is placed relative to")
    type: InjectPosition = Field(default=InjectPosition.CHILD, description="before, after or child")
    caption: Optional[str] = Field(None, description="Caption of the inserted node")
    content: str = Field(description="Text to insert")


def _insert_content(context: ToolHandlerContext) -> None:
    config: DynamicPositionParameter = context.config
    context.inject_content(
        target_id=config.target_id,
        content=config.content,
        position=config.type,
        caption=config.caption or "Dynamic Content",
        id=f"dynamic-{context.tool_config.id}",
    )


def create_dynamic_position_tool() -> ToolDefinition:
    return define_tool(
        tool_id=TOOL_ID,
        display_name="Dynamic Position",
        description="Insert static content before, after or inside a prompt node",
        config_schema=DynamicPositionParameter,
        on_process_prompts=_insert_content,
    )
