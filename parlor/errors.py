"""Exception hierarchy for parlor."""

from typing import Any


class ParlorError(Exception):
    """Base error carrying a stable code and optional details."""

    code = "PARLOR_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigError(ParlorError):
    """Invalid or missing configuration."""

    code = "CONFIG_ERROR"


class PlatformError(ParlorError):
    """Chat-platform I/O failure."""

    code = "PLATFORM_ERROR"


class LLMError(ParlorError):
    """Vendor call failed or no vendor can serve the model."""

    code = "LLM_ERROR"


class ToolError(ParlorError):
    """Tool system failure that cannot be reported back to the model."""

    code = "TOOL_ERROR"
