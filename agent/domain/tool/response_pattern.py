"""Detection of tool invocations embedded in model output

Supported shapes, tried in order (the first pattern that matches wins):

* ``<tool_use name="x">...</tool_use>``, ``<function_call name="x">``, ``<invoke name="x">``
* a fenced ``json`` block ``{"function": "x", "parameters": {...}}``
* ``[TOOL:x] ... [/TOOL]``
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)

MAX_FALLBACK_INPUT = 10000

_KEY_VALUE_LINE = re.compile(r"^\s*([A-Za-z_][\w.-]*)\s*=(.*)$")


@dataclass
class ToolCallMatch:
    found: bool
    tool_id: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    original_text: Optional[str] = None


@dataclass
class ToolPattern:
    name: str
    pattern: "re.Pattern[str]"
    extract_tool_id: Callable[["re.Match[str]"], Optional[str]]
    extract_params: Callable[["re.Match[str]"], Dict[str, Any]]

    def match(self, text: str) -> Optional[ToolCallMatch]:
        for found in self.pattern.finditer(text):
            tool_id = self.extract_tool_id(found)
            if not tool_id:
                continue
            return ToolCallMatch(
                found=True,
                tool_id=tool_id.strip(),
                parameters=self.extract_params(found),
                original_text=found.group(0),
            )
        return None


def _parse_scalar(raw: str) -> Any:
    value = raw.strip()
    try:
        return json.loads(value)
    except ValueError:
        return value


def _parse_key_values(lines: List[str]) -> Optional[Dict[str, Any]]:
    result: Dict[str, Any] = {}
    for line in lines:
        found = _KEY_VALUE_LINE.match(line)
        if not found:
            return None
        result[found.group(1)] = _parse_scalar(found.group(2))
    return result


def parse_tool_parameters(body: str) -> Dict[str, Any]:
    """Turn a tool-call body into a parameter dict

    Tries JSON, then ``key=value`` lines, then a YAML mapping, and finally
    wraps the raw text as ``{"input": text}``.
    """
    text = (body or "").strip()
    if not text:
        return {}

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    lines = [line for line in text.splitlines() if line.strip()]
    key_values = _parse_key_values(lines)
    if key_values is not None:
        return key_values

    try:
        parsed = yaml.safe_load(text)
        if isinstance(parsed, dict) and all(isinstance(key, str) for key in parsed):
            return parsed
    except yaml.YAMLError:
        pass

    logger.debug("Tool parameters not structured, passing raw input", length=len(text))
    return {"input": text[:MAX_FALLBACK_INPUT]}


def _xml_pattern(tag: str) -> ToolPattern:
    return ToolPattern(
        name=tag,
        pattern=re.compile(rf"<{tag}\s+name=[\"']([^\"']+)[\"'][^>]*>(.*?)</{tag}>", re.IGNORECASE | re.DOTALL),
        extract_tool_id=lambda found: found.group(1),
        extract_params=lambda found: parse_tool_parameters(found.group(2)),
    )


def _json_function_id(found: "re.Match[str]") -> Optional[str]:
    try:
        payload = json.loads(found.group(1))
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("function"), str):
        return payload["function"]
    return None


def _json_function_params(found: "re.Match[str]") -> Dict[str, Any]:
    parameters = json.loads(found.group(1)).get("parameters")
    return parameters if isinstance(parameters, dict) else {}


def default_tool_patterns() -> List[ToolPattern]:
    """A fresh list of the built-in patterns, in priority order"""
    return [
        _xml_pattern("tool_use"),
        _xml_pattern("function_call"),
        _xml_pattern("invoke"),
        ToolPattern(
            name="json_function",
            pattern=re.compile(r"```json\s*(\{.*?\})\s*```", re.IGNORECASE | re.DOTALL),
            extract_tool_id=_json_function_id,
            extract_params=_json_function_params,
        ),
        ToolPattern(
            name="tool_block",
            pattern=re.compile(r"\[TOOL:([^\]]+)\](.*?)\[/TOOL\]", re.IGNORECASE | re.DOTALL),
            extract_tool_id=lambda found: found.group(1),
            extract_params=lambda found: parse_tool_parameters(found.group(2)),
        ),
    ]


def match_tool_calling(text: Optional[str], patterns: Optional[List[ToolPattern]] = None) -> ToolCallMatch:
    """Find the first tool invocation in a model response"""

    if not text:
        return ToolCallMatch(found=False)

    for pattern in patterns if patterns is not None else default_tool_patterns():
        try:
            result = pattern.match(text)
        except Exception as e:
            logger.warning("Tool pattern failed", pattern=pattern.name, error=str(e))
            continue
        if result:
            logger.debug("Tool call detected", pattern=pattern.name, tool_id=result.tool_id)
            return result

    return ToolCallMatch(found=False)
