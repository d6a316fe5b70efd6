"""Vendor-neutral conversation model and the provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

from parlor.agent.tools.base import ToolDefinition

StopReason = Literal["end_turn", "max_tokens", "stop_sequence", "tool_use", "refusal"]
Mode = Literal["prefill", "chat"]


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImageBlock:
    """Base64 image payload."""
    data: str
    media_type: str = "image/jpeg"
    type: str = field(default="image", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "image", "source": {"type": "base64", "media_type": self.media_type, "data": self.data}}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


def blocks_text(blocks: list[ContentBlock]) -> str:
    """Concatenate the text blocks."""
    return "".join(b.text for b in blocks if isinstance(b, TextBlock))


@dataclass
class ParticipantMessage:
    """One speaker turn in the vendor-neutral conversation."""
    participant: str
    content: list[ContentBlock] = field(default_factory=list)
    timestamp: datetime | None = None
    message_id: str | None = None
    cache_control: dict[str, str] | None = None
    # All platform ids folded into this turn, for replay and cache bookkeeping
    source_ids: list[str] = field(default_factory=list)
    activation_id: str | None = None

    @property
    def text(self) -> str:
        return blocks_text(self.content)

    @property
    def has_images(self) -> bool:
        return any(isinstance(b, ImageBlock) for b in self.content)

    def text_size(self) -> int:
        """Characters counted toward context limits. Images are excluded."""
        size = 0
        for block in self.content:
            if isinstance(block, TextBlock):
                size += len(block.text)
            elif isinstance(block, ToolResultBlock):
                size += len(block.content)
        return size

    def image_size(self) -> int:
        return sum(len(b.data) for b in self.content if isinstance(b, ImageBlock))

    def is_empty(self) -> bool:
        if not self.content:
            return True
        return all(isinstance(b, TextBlock) and not b.text.strip() for b in self.content)


@dataclass
class ModelConfig:
    """Generation settings and formatting switches for one request."""
    model: str
    temperature: float = 1.0
    max_tokens: int = 4096
    top_p: float = 1.0
    mode: Mode = "prefill"
    bot_inner_name: str = ""
    bot_username: str | None = None
    prefill_thinking: bool = False
    prompt_caching: bool = True
    message_delimiter: str = ""
    chat_persona_prompt: bool = False
    chat_persona_prefill: bool = False
    chat_bot_as_assistant: bool = True
    presence_penalty: float | None = None
    frequency_penalty: float | None = None


@dataclass
class LLMRequest:
    """A vendor-neutral completion request built by the context builder."""
    messages: list[ParticipantMessage]
    config: ModelConfig
    system_prompt: str | None = None
    tools: list[ToolDefinition] | None = None
    stop_sequences: list[str] = field(default_factory=list)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class LLMCompletion:
    """A normalized vendor response."""
    content: list[ContentBlock]
    stop_reason: StopReason = "end_turn"
    usage: Usage = field(default_factory=Usage)
    model: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return blocks_text(self.content)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass
class ProviderMessage:
    """A role-tagged wire turn produced by the request transforms."""
    role: Literal["system", "user", "assistant"]
    content: list[ContentBlock]
    cache_control: dict[str, str] | None = None


@dataclass
class ProviderRequest:
    """Everything a vendor adapter needs for one call."""
    model: str
    messages: list[ProviderMessage]
    max_tokens: int = 4096
    temperature: float = 1.0
    top_p: float = 1.0
    stop_sequences: list[str] = field(default_factory=list)
    tools: list[ToolDefinition] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    mode: Mode = "prefill"


class LLMProvider(ABC):
    """
    Abstract base class for vendor adapters.

    Implementations translate a ProviderRequest into the vendor's wire call
    and normalize the answer into an LLMCompletion. They raise LLMError on
    failure; retries are the router's job.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    def supported_modes(self) -> tuple[Mode, ...]:
        return ("prefill", "chat")

    @property
    def max_stop_sequences(self) -> int | None:
        """Vendor limit on stop sequences, or None when unbounded."""
        return None

    @abstractmethod
    async def complete(self, request: ProviderRequest) -> LLMCompletion:
        """
        Send one completion request.

        Args:
            request: Transformed, vendor-ready request.

        Returns:
            Normalized completion.
        """
        pass
