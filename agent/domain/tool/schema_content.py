import json
from typing import Any, Dict, List, Type

from pydantic import BaseModel


def _type_label(prop: Dict[str, Any]) -> str:
    if "enum" in prop:
        return " | ".join(json.dumps(value, ensure_ascii=False) for value in prop["enum"])
    if "type" in prop:
        return prop["type"]
    options = prop.get("anyOf") or prop.get("oneOf") or []
    labels = [_type_label(option) for option in options if option.get("type") != "null"]
    return " | ".join(labels) if labels else "any"


def schema_to_tool_content(tool_name: str, schema: Type[BaseModel]) -> str:
    """Render an LLM-callable tool schema as prompt text"""

    json_schema = schema.model_json_schema()
    required = set(json_schema.get("required", []))
    lines: List[str] = [f"## {tool_name}"]

    description = json_schema.get("description")
    if description:
        lines.append(f"**Description**: {description}")

    properties = json_schema.get("properties", {})
    if properties:
        lines.append("**Parameters**:")
        for name, prop in properties.items():
            flag = "required" if name in required else "optional"
            line = f"- {name} ({_type_label(prop)}, {flag})"
            if prop.get("description"):
                line += f": {prop['description']}"
            if "default" in prop:
                line += f" [default: {json.dumps(prop['default'], ensure_ascii=False)}]"
            lines.append(line)

    examples = json_schema.get("examples") or []
    if examples:
        lines.append("**Examples**:")
        for example in examples:
            lines.append(f'<tool_use name="{tool_name}">{json.dumps(example, ensure_ascii=False)}</tool_use>')
    else:
        lines.append(f'**Usage**: <tool_use name="{tool_name}">{{"parameter": "value"}}</tool_use>')

    return "\n".join(lines)
