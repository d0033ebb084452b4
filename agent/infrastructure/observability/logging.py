import logging
import sys
from typing import Any, Dict, Optional

import structlog


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "agent-core",
    service_version: Optional[str] = None,
    environment: str = "development",
) -> None:
    """Configure structlog on top of stdlib logging

    ``json`` renders one object per line for log shipping, ``console`` is the
    coloured development renderer.
    """

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_turn_context,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
        version=service_version or "unknown",
    )


def add_turn_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag entries written during a turn with its agent id and round

    Explicit values passed to the log call win over the bound ones.
    """

    context = structlog.contextvars.get_contextvars()
    for key in ("agent_id", "round"):
        value = context.get(key)
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


class AgentLogger:
    """Structured events for turns, rounds, tool calls and prompt edits"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(self, event_type: str, agent_id: str, data: Optional[Dict[str, Any]] = None, **kwargs):
        self.logger.info("agent_event", event_type=event_type, agent_id=agent_id, data=data or {}, **kwargs)

    def log_tool_execution(
        self,
        tool_name: str,
        agent_id: str,
        input_data: Dict[str, Any],
        output_data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None,
    ):
        """Failed calls are logged as warnings; output is left out of those"""

        if not success:
            self.logger.warning("tool_execution", tool_name=tool_name, agent_id=agent_id,
                                input_data=input_data, success=False, error=error)
            return
        self.logger.info("tool_execution", tool_name=tool_name, agent_id=agent_id, input_data=input_data,
                         output_size=len(str(output_data)) if output_data is not None else 0,
                         duration_ms=duration_ms, success=True)

    def log_round_transition(self, agent_id: str, round_number: int, result: str, yield_to: Optional[str] = None):
        self.logger.info("round_transition", agent_id=agent_id, round_number=round_number,
                         result=result, yield_to=yield_to)

    def log_context_update(self, agent_id: str, context_type: str, action: str,
                           details: Optional[Dict[str, Any]] = None):
        self.logger.debug("context_update", agent_id=agent_id, context_type=context_type,
                          action=action, details=details or {})


agent_logger = AgentLogger("agent")
