from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from domain.exceptions import ToolValidationError


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    value: Optional[BaseModel] = None


def format_validation_errors(error: ValidationError) -> List[str]:
    """Flatten pydantic errors into 'field: message' strings"""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        messages.append(f"{location}: {item.get('msg')}")
    return messages


class ToolParameterValidator:
    """Validates tool configs and tool-call parameters against pydantic schemas"""

    @staticmethod
    def validate(schema: Type[BaseModel], parameters: Optional[Dict[str, Any]]) -> ValidationResult:
        try:
            value = schema.model_validate(parameters if parameters is not None else {})
        except ValidationError as e:
            return ValidationResult(False, format_validation_errors(e))
        return ValidationResult(True, [], value)

    @classmethod
    def validate_or_raise(cls, schema: Type[BaseModel], parameters: Optional[Dict[str, Any]],
                          subject: str) -> BaseModel:
        result = cls.validate(schema, parameters)
        if not result.is_valid:
            raise ToolValidationError(
                f"Invalid parameters for {subject}: {'; '.join(result.errors)}",
                details={"subject": subject, "errors": result.errors},
            )
        return result.value
