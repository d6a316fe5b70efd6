"""LiteLLM provider implementation for multi-vendor support."""

import json
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from parlor.errors import LLMError
from parlor.providers.base import (
    ContentBlock,
    ImageBlock,
    LLMCompletion,
    LLMProvider,
    ProviderMessage,
    ProviderRequest,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)

FINISH_REASONS: dict[str, StopReason] = {
    "length": "max_tokens",
    "max_tokens": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "tool_use": "tool_use",
    "content_filter": "refusal",
    "refusal": "refusal",
    "end_turn": "end_turn",
    "stop_sequence": "stop_sequence",
}


def _obj_get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


class LiteLLMProvider(LLMProvider):
    """
    Vendor adapter over LiteLLM's chat-completions interface.

    Handles both modes: prefill requests end on an assistant turn that the
    model continues, chat requests carry native tool definitions.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        vendor: str = "litellm",
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.vendor = vendor
        self.extra_headers = extra_headers or {}
        litellm.suppress_debug_info = True

    @property
    def name(self) -> str:
        return self.vendor

    async def complete(self, request: ProviderRequest) -> LLMCompletion:
        kwargs = self._build_completion_kwargs(request)
        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            raise LLMError(f"Error calling {self.vendor}: {e}", details={"model": request.model}) from e
        return self._parse_response(response, request)

    def _build_completion_kwargs(self, request: ProviderRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self.to_wire_messages(request.messages),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.top_p != 1.0:
            kwargs["top_p"] = request.top_p
        if request.stop_sequences:
            kwargs["stop"] = list(request.stop_sequences)
        if request.presence_penalty is not None:
            kwargs["presence_penalty"] = request.presence_penalty
        if request.frequency_penalty is not None:
            kwargs["frequency_penalty"] = request.frequency_penalty
        if request.tools:
            kwargs["tools"] = [tool.to_openai() for tool in request.tools]
            kwargs["tool_choice"] = "auto"

        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        return kwargs

    @staticmethod
    def to_wire_messages(messages: list[ProviderMessage]) -> list[dict[str, Any]]:
        """Convert transformed turns into OpenAI-style message dicts."""
        wire: list[dict[str, Any]] = []
        for msg in messages:
            parts: list[dict[str, Any]] = []
            tool_calls: list[dict[str, Any]] = []
            tool_results: list[ToolResultBlock] = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    parts.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
                    })
                elif isinstance(block, ToolUseBlock):
                    tool_calls.append({
                        "id": block.id,
                        "type": "function",
                        "function": {"name": block.name, "arguments": json.dumps(block.input, ensure_ascii=False)},
                    })
                elif isinstance(block, ToolResultBlock):
                    tool_results.append(block)

            if msg.cache_control and parts:
                for part in reversed(parts):
                    if part["type"] == "text":
                        part["cache_control"] = dict(msg.cache_control)
                        break

            if parts or tool_calls:
                entry: dict[str, Any] = {"role": msg.role, "content": parts}
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                wire.append(entry)
            for result in tool_results:
                wire.append({"role": "tool", "tool_call_id": result.tool_use_id, "content": result.content})
        return wire

    def _parse_response(self, response: Any, request: ProviderRequest) -> LLMCompletion:
        choices = _obj_get(response, "choices") or []
        if not choices:
            raise LLMError(f"{self.vendor} returned no choices", details={"model": request.model})
        choice = choices[0]
        message = _obj_get(choice, "message")

        content: list[ContentBlock] = []
        text = _obj_get(message, "content")
        if isinstance(text, str) and text:
            content.append(TextBlock(text))
        for tc in _obj_get(message, "tool_calls") or []:
            function = _obj_get(tc, "function")
            args = _obj_get(function, "arguments")
            if isinstance(args, str):
                args = self._parse_tool_arguments(args)
            content.append(ToolUseBlock(
                id=_obj_get(tc, "id") or "",
                name=_obj_get(function, "name") or "",
                input=args or {},
            ))

        raw: dict[str, Any] = {"finish_reason": _obj_get(choice, "finish_reason")}
        stop_reason, stop_sequence = self._map_stop_reason(choice, message, request)
        if stop_sequence is not None:
            raw["stop_sequence"] = stop_sequence
        logger.debug(
            f"{self.vendor} finished with {raw['finish_reason']} -> {stop_reason}, {len(text or '')} chars"
        )
        return LLMCompletion(
            content=content,
            stop_reason=stop_reason,
            usage=self._parse_usage(_obj_get(response, "usage")),
            model=_obj_get(response, "model") or request.model,
            raw=raw,
        )

    @staticmethod
    def _map_stop_reason(choice: Any, message: Any, request: ProviderRequest) -> tuple[StopReason, str | None]:
        """
        Normalize the finish reason.

        Chat-completions reports both a natural end and a matched stop
        sequence as ``stop``. Vendors that echo the matched sequence are
        mapped exactly; otherwise ``stop`` counts as a stop-sequence hit
        whenever stop sequences were sent.
        """
        finish = str(_obj_get(choice, "finish_reason") or "stop")
        specific = _obj_get(message, "provider_specific_fields") or {}
        matched = _obj_get(choice, "stop_sequence") or _obj_get(specific, "stop_sequence")
        if matched:
            return "stop_sequence", str(matched)
        if finish in FINISH_REASONS:
            return FINISH_REASONS[finish], None
        if finish == "stop" and request.stop_sequences:
            return "stop_sequence", None
        return "end_turn", None

    @staticmethod
    def _parse_usage(usage: Any) -> Usage:
        if not usage:
            return Usage()
        details = _obj_get(usage, "prompt_tokens_details")
        return Usage(
            input_tokens=int(_obj_get(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(_obj_get(usage, "completion_tokens", 0) or 0),
            cache_creation_tokens=int(_obj_get(usage, "cache_creation_input_tokens", 0) or 0),
            cache_read_tokens=int(
                _obj_get(usage, "cache_read_input_tokens", 0) or _obj_get(details, "cached_tokens", 0) or 0
            ),
        )

    @staticmethod
    def _parse_tool_arguments(raw: str) -> dict[str, Any]:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
