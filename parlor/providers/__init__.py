"""LLM provider abstraction module."""

from parlor.providers.base import (
    ImageBlock,
    LLMCompletion,
    LLMProvider,
    LLMRequest,
    ModelConfig,
    ParticipantMessage,
    ProviderMessage,
    ProviderRequest,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from parlor.providers.completions_provider import TextCompletionProvider
from parlor.providers.litellm_provider import LiteLLMProvider
from parlor.providers.router import LLMRouter

__all__ = [
    "ImageBlock",
    "LLMCompletion",
    "LLMProvider",
    "LLMRequest",
    "LLMRouter",
    "LiteLLMProvider",
    "ModelConfig",
    "ParticipantMessage",
    "ProviderMessage",
    "ProviderRequest",
    "TextBlock",
    "TextCompletionProvider",
    "ToolResultBlock",
    "ToolUseBlock",
]
