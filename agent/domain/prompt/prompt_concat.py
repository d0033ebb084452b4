import asyncio
import base64
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from domain.exceptions import HookExecutionError
from domain.hooks.contexts import AgentFrameworkContext, PromptConcatHookContext
from domain.hooks.hook_registry import AgentFrameworkHooks
from domain.models.agent import AgentInstanceMessage, FrameworkConfig, ToolConfig
from domain.models.agent_state import MessageRole
from domain.models.prompt import PromptNode
from domain.prompt.prompt_tree import clone_prompts

logger = structlog.get_logger(__name__)

_MESSAGE_TYPES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


@dataclass
class PromptConcatResult:
    flat_prompts: List[BaseMessage]
    processed_prompts: List[PromptNode] = field(default_factory=list)


def _collect_text(prompt: PromptNode) -> str:
    """A node's own text followed by the text of its role-less descendants"""
    text = prompt.text or ""
    for child in prompt.children:
        if child.enabled and not child.role:
            text += _collect_text(child)
    return text


def _role_descendants(children: List[PromptNode]) -> List[PromptNode]:
    found = []
    for child in children:
        if not child.enabled:
            continue
        if child.role:
            found.append(child)
        found.extend(_role_descendants(child.children))
    return found


def _to_message(role: str, content: str) -> BaseMessage:
    return _MESSAGE_TYPES[role](content=content)


def flatten_prompts(prompts: List[PromptNode]) -> List[BaseMessage]:
    """Turn a prompt tree into the ordered message list a provider consumes

    Nodes without a role contribute their text to the nearest ancestor;
    nodes with a role become their own message. Disabled subtrees are skipped.
    """

    result: List[BaseMessage] = []
    for prompt in prompts:
        if not prompt.enabled:
            logger.debug("Skipping disabled prompt", prompt_id=prompt.id)
            continue

        content = _collect_text(prompt)
        if content.strip() or prompt.role:
            result.append(_to_message(prompt.role or "system", content.strip()))

        for child in _role_descendants(prompt.children):
            result.append(_to_message(child.role, _collect_text(child).strip()))

    logger.debug("Prompt flattening completed", count=len(result))
    return result


def _read_file(path: str) -> bytes:
    return Path(path).read_bytes()


async def build_user_content(message: AgentInstanceMessage) -> Any:
    """Text content, or an image+text list when the message carries a file"""

    attachment: Optional[Dict[str, Any]] = message.metadata.get("file")
    if not attachment:
        return message.content

    try:
        data = attachment.get("data")
        if data is None:
            data = base64.b64encode(await asyncio.to_thread(_read_file, attachment["path"])).decode("ascii")
        mime_type = (
            attachment.get("mime_type")
            or mimetypes.guess_type(attachment.get("path") or attachment.get("name") or "")[0]
            or "application/octet-stream"
        )
    except (OSError, KeyError) as e:
        logger.error("Failed to read attachment, sending text only", message_id=message.id, error=str(e))
        return message.content

    return [
        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}},
        {"type": "text", "text": message.content},
    ]


async def prompt_concat(
    framework_config: FrameworkConfig,
    messages: List[AgentInstanceMessage],
    registry=None,
    hooks: Optional[AgentFrameworkHooks] = None,
    tool_configs: Optional[List[ToolConfig]] = None,
    agent_framework_context: Optional[AgentFrameworkContext] = None,
) -> PromptConcatResult:
    """Run every configured tool over a copy of the prompt template and flatten it"""

    if hooks is None:
        if registry is not None:
            hooks, tool_configs = registry.create_hooks_with_tools(framework_config)
        else:
            hooks = AgentFrameworkHooks()
    if tool_configs is None:
        tool_configs = list(framework_config.tools)

    prompts = clone_prompts(framework_config.prompts)

    for tool_config in tool_configs:
        context = PromptConcatHookContext(
            messages=messages,
            prompts=prompts,
            tool_config=tool_config,
            agent_framework_context=agent_framework_context,
        )
        try:
            context = await hooks.process_prompts.call(context)
        except HookExecutionError as e:
            # Remaining tools still run
            logger.error("Tool failed to process prompts", tool_id=tool_config.tool_id,
                         tool_config_id=tool_config.id, error=e.message)
            continue
        prompts = context.prompts

    try:
        final_context = await hooks.finalize_prompts.call(PromptConcatHookContext(
            messages=messages,
            prompts=prompts,
            agent_framework_context=agent_framework_context,
        ))
        prompts = final_context.prompts
    except HookExecutionError as e:
        logger.error("Prompt finalization failed", error=e.message)

    flat_prompts = flatten_prompts(prompts)

    last = messages[-1] if messages else None
    if last is not None and last.role == MessageRole.USER:
        logger.debug("Adding user message to prompts", message_id=last.id, content_length=len(last.content))
        flat_prompts.append(HumanMessage(content=await build_user_content(last)))

    return PromptConcatResult(flat_prompts=flat_prompts, processed_prompts=prompts)
