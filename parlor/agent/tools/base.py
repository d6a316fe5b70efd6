"""Base class for agent tools and the tool call records."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path

    from parlor.config.schema import BotConfig
    from parlor.platform.base import PlatformConnector


def _dt(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""
    id: str
    name: str
    input: dict[str, Any]
    message_id: str | None = None  # Triggering platform message
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    original_completion_text: str = ""
    bot_message_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
            "original_completion_text": self.original_completion_text,
            "bot_message_ids": list(self.bot_message_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            input=dict(data.get("input") or {}),
            message_id=data.get("message_id"),
            timestamp=_dt(data.get("timestamp")),
            original_completion_text=str(data.get("original_completion_text") or ""),
            bot_message_ids=[str(x) for x in data.get("bot_message_ids") or []],
        )


@dataclass
class ToolResult:
    """Outcome of a tool invocation. Failures are carried in ``error``."""
    call_id: str
    output: Any = ""
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def text(self) -> str:
        if self.error:
            return f"Error: {self.error}"
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "output": self.output,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            call_id=str(data.get("call_id") or ""),
            output=data.get("output", ""),
            error=str(data["error"]) if data.get("error") is not None else None,
            timestamp=_dt(data.get("timestamp")),
        )


@dataclass
class ToolContext:
    """Per-activation context handed to tools that act on the platform."""
    bot_id: str
    channel_id: str
    guild_id: str | None = None
    config: BotConfig | None = None
    connector: PlatformConnector | None = None
    cache_dir: Path | None = None


class Tool(ABC):
    """
    Abstract base class for agent tools.

    A tool is a name, a description, a JSON schema for its input and an
    async ``execute``. Plugin tools and tool-server tools share this
    interface so dispatch is a single registry lookup.
    """

    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    def __init__(self):
        self._context: ToolContext | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """
        Execute the tool with given parameters.

        Returns:
            Tool output, usually a string.
        """
        pass

    def set_context(self, context: ToolContext) -> None:
        self._context = context

    @property
    def context(self) -> ToolContext | None:
        return getattr(self, "_context", None)

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Validate params against the JSON schema. Returns a list of errors."""
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t, label = schema.get("type"), path or "parameter"
        expected = self._TYPE_MAP.get(t) if t else None
        if expected is not None:
            if not isinstance(val, expected) or (t in ("integer", "number") and isinstance(val, bool)):
                return [f"{label} should be {t}"]

        errors: list[str] = []
        if "enum" in schema and val not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if t in ("integer", "number"):
            if "minimum" in schema and val < schema["minimum"]:
                errors.append(f"{label} must be >= {schema['minimum']}")
            if "maximum" in schema and val > schema["maximum"]:
                errors.append(f"{label} must be <= {schema['maximum']}")
        if t == "string":
            if "minLength" in schema and len(val) < schema["minLength"]:
                errors.append(f"{label} must be at least {schema['minLength']} chars")
            if "maxLength" in schema and len(val) > schema["maxLength"]:
                errors.append(f"{label} must be at most {schema['maxLength']} chars")
        if t == "object":
            props = schema.get("properties", {})
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in props:
                    errors.extend(self._validate(v, props[k], path + "." + k if path else k))
        if t == "array" and "items" in schema:
            for i, item in enumerate(val):
                errors.extend(self._validate(item, schema["items"], f"{path}[{i}]" if path else f"[{i}]"))
        return errors

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_definition(self) -> "ToolDefinition":
        return ToolDefinition(name=self.name, description=self.description, input_schema=self.parameters)


@dataclass
class ToolDefinition:
    """Vendor-neutral tool description attached to an LLM request."""
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }
