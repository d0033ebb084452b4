import copy
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field


class ProviderErrorDetail(BaseModel):
    """Structured description of a provider failure"""
    name: str = "ProviderError"
    code: Optional[str] = None
    message: str = "Unknown error"
    provider: Optional[str] = None


class ProviderResponse(BaseModel):
    """One chunk of a provider stream; content is cumulative"""
    status: Literal["update", "done", "error"]
    content: str = ""
    request_id: Optional[str] = None
    error_detail: Optional[ProviderErrorDetail] = None


class LLMProvider(ABC):
    """Streaming contract the orchestrator needs from a model provider"""

    @abstractmethod
    async def get_default_config(self) -> Dict[str, Any]:
        """Provider level defaults, the lowest layer of the merged config"""

    @abstractmethod
    def generate(
        self,
        flat_prompts: List[BaseMessage],
        config: Dict[str, Any],
        meta: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[ProviderResponse]:
        """Stream update chunks followed by exactly one done or error chunk"""

    @abstractmethod
    async def cancel(self, request_id: str) -> None:
        """Abort an in-flight request"""


def deep_merge(base: Dict[str, Any], *overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge dicts field by field; later layers win, nested dicts merge recursively"""

    result = copy.deepcopy(base) if base else {}
    for override in overrides:
        if not override:
            continue
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = deep_merge(result[key], value)
            elif value is not None:
                result[key] = copy.deepcopy(value)
    return result


def merge_provider_config(
    provider_defaults: Optional[Dict[str, Any]],
    definition_config: Optional[Dict[str, Any]],
    instance_config: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """provider defaults <- agent definition override <- agent instance override"""
    return deep_merge(provider_defaults or {}, definition_config, instance_config)
