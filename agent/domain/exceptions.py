from typing import Dict, Any, Optional


class AgentError(Exception):
    """Base error for the agent orchestration core

    Attributes:
        message: Human-readable error message
        error_code: Categorized error code for programmatic handling
        details: Additional error context
    """

    error_code = "agent_error"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code}: {self.message})"


class AgentNotFoundError(AgentError):
    """Raised when an agent instance does not exist"""

    error_code = "agent_not_found"


class AgentDefinitionNotFoundError(AgentError):
    """Raised when an agent definition does not exist"""

    error_code = "agent_definition_not_found"


class AgentDefinitionParseError(AgentError):
    """Raised when an agent definition file cannot be parsed"""

    error_code = "agent_definition_invalid"

    def __init__(self, message: str, file_path: Any):
        self.file_path = file_path
        super().__init__(f"{message} (file: {file_path})", details={"file_path": str(file_path)})


class FrameworkNotFoundError(AgentError):
    """Raised when a definition names a handler that is not registered"""

    error_code = "framework_not_found"


class ToolNotFoundError(AgentError):
    """Raised when no tool is registered under an id"""

    error_code = "tool_not_found"


class ToolValidationError(AgentError):
    """Raised when tool config or tool-call parameters fail validation"""

    error_code = "tool_validation_failed"


class ToolExecutionError(AgentError):
    """Raised when a tool executor fails or times out"""

    error_code = "tool_execution_failed"


class HookExecutionError(AgentError):
    """Raised when a waterfall hook handler fails and aborts its phase"""

    error_code = "hook_execution_failed"

    def __init__(self, hook_name: str, tap_name: str, cause: Exception):
        self.hook_name = hook_name
        self.tap_name = tap_name
        super().__init__(
            f"Handler '{tap_name}' failed in hook '{hook_name}': {cause}",
            details={"hook": hook_name, "tap": tap_name},
        )


class ProviderError(AgentError):
    """Raised by provider adapters; surfaced to the loop as an error chunk"""

    error_code = "provider_error"

    def __init__(self, message: str, provider: str = "unknown", error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.provider = provider
        super().__init__(message, error_code=error_code, details=details)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        return data


class PersistenceError(AgentError):
    """Raised when an awaited write to the message store fails"""

    error_code = "persistence_failed"


class PromptConcatTimeoutError(AgentError):
    """Raised when prompt generation does not finish in time"""

    error_code = "prompt_concat_timeout"
