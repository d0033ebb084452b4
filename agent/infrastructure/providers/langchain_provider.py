import importlib
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from domain.models.agent import new_id
from domain.provider.llm_provider import LLMProvider, ProviderErrorDetail, ProviderResponse

logger = structlog.get_logger(__name__)


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


class LangChainChatProvider(LLMProvider):
    """Adapts any LangChain chat model to the streaming provider contract

    ``model_parameters`` from the merged config are bound to the model for
    each request; chunk content is accumulated so every update carries the
    full text so far.
    """

    def __init__(
        self,
        model: BaseChatModel,
        provider_name: str = "langchain",
        model_name: Optional[str] = None,
        model_parameters: Optional[Dict[str, Any]] = None,
    ):
        self.model = model
        self.provider_name = provider_name
        self.model_name = model_name
        self.model_parameters = model_parameters or {}
        self._cancelled: Set[str] = set()
        self._active: Set[str] = set()

    async def get_default_config(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "model": self.model_name,
            "model_parameters": dict(self.model_parameters),
        }

    async def generate(
        self,
        flat_prompts: List[BaseMessage],
        config: Dict[str, Any],
        meta: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[ProviderResponse]:
        request_id = new_id("req")
        parameters = config.get("model_parameters") or {}
        runnable = self.model.bind(**parameters) if parameters else self.model
        content = ""
        self._active.add(request_id)
        logger.debug("Provider request started", request_id=request_id, provider=self.provider_name,
                     prompt_count=len(flat_prompts), **(meta or {}))
        try:
            async for chunk in runnable.astream(flat_prompts):
                if request_id in self._cancelled:
                    logger.info("Provider request cancelled", request_id=request_id)
                    return
                content += _chunk_text(chunk.content)
                yield ProviderResponse(status="update", content=content, request_id=request_id)

            if request_id in self._cancelled:
                return
            yield ProviderResponse(status="done", content=content, request_id=request_id)
        except Exception as e:
            logger.error("Provider request failed", request_id=request_id, provider=self.provider_name, error=str(e))
            yield ProviderResponse(
                status="error",
                content=content,
                request_id=request_id,
                error_detail=ProviderErrorDetail(
                    name=type(e).__name__,
                    code=str(e.code) if getattr(e, "code", None) is not None else None,
                    message=str(e),
                    provider=self.provider_name,
                ),
            )
        finally:
            self._active.discard(request_id)
            self._cancelled.discard(request_id)

    async def cancel(self, request_id: str) -> None:
        if request_id in self._active:
            self._cancelled.add(request_id)
            logger.debug("Cancel requested", request_id=request_id)


def load_chat_model(class_path: str, model_kwargs: Optional[Dict[str, Any]] = None) -> BaseChatModel:
    """Instantiate a chat model from ``"package.module:ClassName"``"""

    module_name, _, class_name = class_path.partition(":")
    if not class_name:
        raise ValueError(f"Chat model path must look like 'module:ClassName', got {class_path!r}")
    model_class = getattr(importlib.import_module(module_name), class_name)
    model = model_class(**(model_kwargs or {}))
    if not isinstance(model, BaseChatModel):
        raise TypeError(f"{class_path} is not a LangChain chat model")
    return model
