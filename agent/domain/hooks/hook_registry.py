import inspect
from typing import Any, Awaitable, Callable, List, Tuple, Union

import structlog

from domain.exceptions import HookExecutionError

logger = structlog.get_logger(__name__)

HookHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


async def invoke_handler(handler: HookHandler, context: Any) -> Any:
    result = handler(context)
    if inspect.isawaitable(result):
        result = await result
    return result


class _Hook:
    """Named extension point holding handlers in registration order"""

    def __init__(self, name: str):
        self.name = name
        self._taps: List[Tuple[str, HookHandler]] = []

    def tap(self, tap_name: str, handler: HookHandler) -> None:
        """Register a handler; handlers run in the order they were tapped"""
        self._taps.append((tap_name, handler))

    @property
    def tap_names(self) -> List[str]:
        return [tap_name for tap_name, _ in self._taps]

    def __len__(self) -> int:
        return len(self._taps)


class WaterfallHook(_Hook):
    """Sequential chain where every handler sees the previous handler's output

    A handler may mutate the context in place and return None, or return a
    replacement context. A failing handler aborts the whole phase.
    """

    async def call(self, context: Any) -> Any:
        for tap_name, handler in self._taps:
            try:
                result = await invoke_handler(handler, context)
            except Exception as e:
                logger.error("Waterfall handler failed", hook=self.name, tap=tap_name, error=str(e))
                raise HookExecutionError(self.name, tap_name, e) from e
            if result is not None:
                context = result
        return context


class SeriesHook(_Hook):
    """Sequential notification; handlers share one context and never chain results"""

    async def call(self, context: Any) -> None:
        for tap_name, handler in self._taps:
            try:
                await invoke_handler(handler, context)
            except Exception as e:
                # One misbehaving handler must not stop its siblings
                logger.error("Series handler failed", hook=self.name, tap=tap_name, error=str(e), exc_info=True)


class AgentFrameworkHooks:
    """The eight extension points available to tools during one turn"""

    def __init__(self):
        self.process_prompts = WaterfallHook("processPrompts")
        self.finalize_prompts = WaterfallHook("finalizePrompts")
        self.post_process = WaterfallHook("postProcess")
        self.user_message_received = SeriesHook("userMessageReceived")
        self.agent_status_changed = SeriesHook("agentStatusChanged")
        self.tool_executed = SeriesHook("toolExecuted")
        self.response_update = SeriesHook("responseUpdate")
        self.response_complete = SeriesHook("responseComplete")

    def all_hooks(self) -> List[_Hook]:
        return [
            self.process_prompts,
            self.finalize_prompts,
            self.post_process,
            self.user_message_received,
            self.agent_status_changed,
            self.tool_executed,
            self.response_update,
            self.response_complete,
        ]

    def describe(self):
        """Map hook name to the tap names registered on it"""
        return {hook.name: hook.tap_names for hook in self.all_hooks()}
