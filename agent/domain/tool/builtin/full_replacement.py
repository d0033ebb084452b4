from typing import Literal

import structlog
from pydantic import Field

from domain.context.message_filter import (
    filter_messages_by_duration, history_without_current_input, normalize_role,
)
from domain.models.base import CamelModel
from domain.models.prompt import PromptNode
from domain.tool.tool_definition import (
    PostProcessHandlerContext, ToolDefinition, ToolHandlerContext, define_tool,
)

logger = structlog.get_logger(__name__)

TOOL_ID = "fullReplacement"
NO_HISTORY_TEXT = "No chat history."


class FullReplacementParameter(CamelModel):
    """Replace a prompt or response node with content from another source"""
    target_id: str = Field(description="Id of the prompt or response node to replace")
    source_type: Literal["historyOfSession", "llmResponse"] = Field(
        description="historyOfSession fills a prompt node, llmResponse fills a response node"
    )


def _replace_with_history(context: ToolHandlerContext) -> None:
    config: FullReplacementParameter = context.config
    if config.source_type != "historyOfSession":
        return

    found = context.find_prompt(config.target_id)
    if found is None:
        logger.warning("Target prompt not found for full replacement", target_id=config.target_id,
                       tool_config_id=context.tool_config.id)
        return

    history = filter_messages_by_duration(history_without_current_input(context.messages))
    if not history:
        found.prompt.text = NO_HISTORY_TEXT
        return

    found.prompt.text = None
    found.prompt.children = [
        PromptNode(
            id=f"history-{index}",
            caption=f"History message {index + 1}",
            role=normalize_role(message.role),
            text=message.content,
            file=message.metadata.get("file"),
        )
        for index, message in enumerate(history)
    ]
    logger.debug("History inserted", target_id=config.target_id, count=len(history))


def _replace_with_response(context: PostProcessHandlerContext) -> None:
    config: FullReplacementParameter = context.config
    if config.source_type != "llmResponse":
        return

    found = context.find_response(config.target_id)
    if found is None:
        logger.warning("Target response not found for full replacement", target_id=config.target_id,
                       tool_config_id=context.tool_config.id)
        return
    found.text = context.llm_response


def create_full_replacement_tool() -> ToolDefinition:
    return define_tool(
        tool_id=TOOL_ID,
        display_name="Full Replacement",
        description="Replace a prompt node with the session history, or a response node with the model output",
        config_schema=FullReplacementParameter,
        on_process_prompts=_replace_with_history,
        on_post_process=_replace_with_response,
    )
