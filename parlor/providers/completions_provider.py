"""Base-model provider over the legacy text-completions endpoint."""

import json
from typing import Any

import litellm
from litellm import atext_completion
from loguru import logger

from parlor.errors import LLMError
from parlor.providers.base import (
    LLMCompletion,
    LLMProvider,
    Mode,
    ProviderMessage,
    ProviderRequest,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from parlor.providers.litellm_provider import LiteLLMProvider, _obj_get


class TextCompletionProvider(LLMProvider):
    """
    Sends a prefill transcript as one flat prompt to a ``/completions`` endpoint.

    Base models have no roles and no native tools, so only prefill mode is
    supported and every turn is concatenated in order.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None, vendor: str = "completions"):
        if not api_base:
            raise LLMError(f"Text completion vendor {vendor} requires a base URL")
        super().__init__(api_key, api_base)
        self.vendor = vendor
        litellm.suppress_debug_info = True

    @property
    def name(self) -> str:
        return self.vendor

    @property
    def supported_modes(self) -> tuple[Mode, ...]:
        return ("prefill",)

    @property
    def max_stop_sequences(self) -> int | None:
        return 4

    async def complete(self, request: ProviderRequest) -> LLMCompletion:
        prompt = self.build_prompt(request.messages)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "prompt": prompt,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "api_base": self.api_base,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if request.stop_sequences:
            kwargs["stop"] = list(request.stop_sequences)
        if request.top_p != 1.0:
            kwargs["top_p"] = request.top_p

        logger.debug(f"Calling {self.vendor} completions for {request.model} ({len(prompt)} prompt chars)")
        try:
            response = await atext_completion(**kwargs)
        except Exception as e:
            raise LLMError(f"Error calling {self.vendor}: {e}", details={"model": request.model}) from e

        choices = _obj_get(response, "choices") or []
        choice = choices[0] if choices else None
        text = _obj_get(choice, "text") or ""
        stop_reason, matched = LiteLLMProvider._map_stop_reason(choice, None, request)
        raw: dict[str, Any] = {"finish_reason": _obj_get(choice, "finish_reason")}
        if matched is not None:
            raw["stop_sequence"] = matched
        return LLMCompletion(
            content=[TextBlock(text)] if text else [],
            stop_reason=stop_reason,
            usage=LiteLLMProvider._parse_usage(_obj_get(response, "usage")),
            model=request.model,
            raw=raw,
        )

    @staticmethod
    def build_prompt(messages: list[ProviderMessage]) -> str:
        """Concatenate every turn's text. Images are dropped."""
        parts: list[str] = []
        for msg in messages:
            for block in msg.content:
                if isinstance(block, TextBlock):
                    parts.append(block.text)
                elif isinstance(block, ToolResultBlock):
                    parts.append(block.content)
                elif isinstance(block, ToolUseBlock):
                    parts.append(f"<{block.name}>{json.dumps(block.input, ensure_ascii=False)}</{block.name}>")
        return "\n".join(p for p in parts if p)
