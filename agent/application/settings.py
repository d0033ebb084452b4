"""Application settings for the agent core service."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

AGENT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Settings read from ``AGENT_*`` environment variables or a ``.env`` file"""

    model_config = SettingsConfigDict(env_prefix="AGENT_", env_file=".env", extra="ignore")

    # Debugging Configuration
    environment: str = "development"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Application Configuration
    service_name: str = "agent-core"
    service_version: str = "0.1.0"
    app_host: str = "127.0.0.1"
    app_port: int = 8000
    cors_origins: List[str] = ["*"]

    # Conversation
    debounce_ms: int = 300
    prompt_concat_timeout_s: float = 20.0
    tool_timeout_s: float = 60.0

    # Agent definitions
    definitions_dir: Path = AGENT_ROOT / "definitions"
    default_definition_id: str = "task-agent"

    # Storage
    storage_backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "data/agents.db"

    # Provider defaults, lowest layer of the merged provider config
    default_provider: str = "langchain"
    default_model: str = "fake-chat"
    model_parameters: Dict[str, Any] = {}
    chat_model_class: str = "langchain_core.language_models.fake_chat_models:FakeListChatModel"
    chat_model_kwargs: Dict[str, Any] = {"responses": ["No chat model configured; set AGENT_CHAT_MODEL_CLASS."]}


@lru_cache
def get_settings() -> Settings:
    return Settings()
