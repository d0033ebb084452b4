import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from domain.exceptions import ToolExecutionError
from domain.tool.tool_validator import format_validation_errors

logger = structlog.get_logger(__name__)


class ToolExecutionResult(BaseModel):
    """What a tool executor hands back to the framework"""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


ToolExecutorFn = Callable[[Any], Awaitable[Union[ToolExecutionResult, Dict[str, Any]]]]


class ToolExecutor:
    """Runs tool executors with a timeout and execution metadata

    Executors must not persist messages; the framework turns the returned
    result into a tool-result message.
    """

    def __init__(self, timeout_s: Optional[float] = 60.0):
        self.timeout_s = timeout_s

    async def execute(self, tool_name: str, executor: ToolExecutorFn, parameters: Any) -> ToolExecutionResult:
        """Await the executor; raises ToolExecutionError on timeout or failure"""

        started = time.perf_counter()
        try:
            if self.timeout_s:
                raw = await asyncio.wait_for(executor(parameters), timeout=self.timeout_s)
            else:
                raw = await executor(parameters)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(
                f"Tool execution timeout after {self.timeout_s}s",
                details={"tool": tool_name},
            ) from e
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(str(e), details={"tool": tool_name}) from e

        try:
            result = raw if isinstance(raw, ToolExecutionResult) else ToolExecutionResult.model_validate(raw)
        except ValidationError as e:
            raise ToolExecutionError(
                f"Tool returned an invalid result: {'; '.join(format_validation_errors(e))}",
                details={"tool": tool_name},
            ) from e
        duration_ms = (time.perf_counter() - started) * 1000
        result.metadata = {**result.metadata, "execution_time_ms": round(duration_ms, 2)}

        logger.debug("Tool executed", tool=tool_name, success=result.success, duration_ms=duration_ms)
        return result
