from dataclasses import dataclass
from typing import List, Optional

import structlog

from domain.exceptions import HookExecutionError
from domain.hooks.contexts import AgentFrameworkContext, HookActions, PostProcessContext
from domain.hooks.hook_registry import AgentFrameworkHooks
from domain.models.agent import FrameworkConfig, ToolConfig
from domain.models.agent_state import YieldTarget
from domain.models.prompt import AgentResponse

logger = structlog.get_logger(__name__)


@dataclass
class ResponseConcatResult:
    processed_response: str
    yield_next_round_to: Optional[YieldTarget] = None
    new_user_message: Optional[str] = None


def flatten_responses(responses: List[AgentResponse]) -> str:
    texts = []
    for response in responses:
        if not response.enabled:
            continue
        text = (response.text or "") + flatten_responses(response.children)
        if text:
            texts.append(text)
    return "\n\n".join(texts).strip()


async def response_concat(
    framework_config: FrameworkConfig,
    llm_response: str,
    context: AgentFrameworkContext,
    hooks: AgentFrameworkHooks,
    tool_configs: Optional[List[ToolConfig]] = None,
    actions: Optional[HookActions] = None,
) -> ResponseConcatResult:
    """Let tools post-process the model output through the response template"""

    responses = [response.model_copy(deep=True) for response in framework_config.response]
    actions = actions or HookActions()

    for tool_config in tool_configs if tool_configs is not None else framework_config.tools:
        post_context = PostProcessContext(
            messages=context.messages,
            llm_response=llm_response,
            responses=responses,
            tool_config=tool_config,
            agent_framework_context=context,
            actions=actions,
        )
        try:
            post_context = await hooks.post_process.call(post_context)
        except HookExecutionError as e:
            logger.error("Tool failed to post-process response", tool_id=tool_config.tool_id, error=e.message)
            continue
        responses = post_context.responses

    processed = flatten_responses(responses) or llm_response
    logger.debug("Response processing completed", original_length=len(llm_response),
                 processed_length=len(processed), yield_to=actions.yield_next_round_to)
    return ResponseConcatResult(
        processed_response=processed,
        yield_next_round_to=actions.yield_next_round_to,
        new_user_message=actions.new_user_message,
    )
