"""Vendor selection and request transformation for LLM calls."""

from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from parlor.agent.tools.base import ToolDefinition
from parlor.config.schema import VendorConfig
from parlor.errors import LLMError
from parlor.providers.base import (
    ContentBlock,
    ImageBlock,
    LLMCompletion,
    LLMProvider,
    LLMRequest,
    ParticipantMessage,
    ProviderMessage,
    ProviderRequest,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from parlor.providers.completions_provider import TextCompletionProvider
from parlor.providers.litellm_provider import LiteLLMProvider
from parlor.utils.retry import retry_llm

EPHEMERAL = {"type": "ephemeral"}
TOOLS_TAIL_LINES = 10
PERSONA_PROMPT = (
    "Respond to the chat, where your username is shown as {name}. "
    "Only respond with the content of your message, without including your username."
)

_EXAMPLE_VALUES: dict[str, Any] = {
    "string": "...",
    "integer": 1,
    "number": 1.0,
    "boolean": True,
    "array": [],
    "object": {},
}


def matches_any(model: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        try:
            if re.search(pattern, model):
                return True
        except re.error as e:
            logger.warning(f"Invalid vendor pattern {pattern!r}: {e}")
    return False


def _find_key(config: dict[str, str], suffixes: tuple[str, ...]) -> str | None:
    for key, value in config.items():
        if value and key.lower().endswith(suffixes):
            return value
    return None


class LLMRouter:
    """
    Routes vendor-neutral requests to registered providers.

    The model name selects a vendor through its ``provides`` patterns; the
    request is then rendered as a prefill transcript or as chat turns.
    """

    def __init__(self, retry_delay_ms: int = 1000):
        self.providers: dict[str, LLMProvider] = {}
        self.vendor_configs: dict[str, VendorConfig] = {}
        self.retry_delay_ms = retry_delay_ms

    def register_provider(self, provider: LLMProvider, name: str | None = None) -> None:
        """Register a provider, by default under its own name. Use the vendor name for routing."""
        key = name or provider.name
        self.providers[key] = provider
        logger.info(f"Registered LLM provider {key} ({provider.name})")

    def set_vendor_configs(self, configs: dict[str, VendorConfig]) -> None:
        self.vendor_configs = dict(configs)

    @classmethod
    def from_vendors(cls, vendors: dict[str, VendorConfig], retry_delay_ms: int = 1000) -> "LLMRouter":
        """
        Build a router with one LiteLLM-backed provider per vendor.

        Credentials are read from keys ending in ``api_key`` and
        ``base_url``/``api_base``. Vendors whose keys mention
        ``completions`` talk to a base-model text-completions endpoint.
        """
        router = cls(retry_delay_ms=retry_delay_ms)
        router.set_vendor_configs(vendors)
        for vendor, config in vendors.items():
            api_key = _find_key(config.config, ("api_key",))
            api_base = _find_key(config.config, ("base_url", "api_base"))
            if any("completions" in key for key in config.config):
                if not api_base:
                    logger.warning(f"Skipping vendor {vendor}: text completions need a base URL")
                    continue
                provider: LLMProvider = TextCompletionProvider(api_key=api_key, api_base=api_base, vendor=vendor)
            else:
                provider = LiteLLMProvider(api_key=api_key, api_base=api_base, vendor=vendor)
            router.register_provider(provider, name=vendor)
        return router

    def select_provider(self, model: str) -> LLMProvider:
        """
        First vendor whose patterns match the model and that has a provider.

        Raises:
            LLMError: If no vendor can serve the model.
        """
        for vendor, config in self.vendor_configs.items():
            if not matches_any(model, config.provides):
                continue
            provider = self.providers.get(vendor)
            if provider is not None:
                logger.debug(f"Selected vendor {vendor} for {model}")
                return provider
            logger.debug(f"Vendor {vendor} matches {model} but has no registered provider")
        raise LLMError(f"No provider found for model: {model}", details={"model": model})

    async def complete(self, request: LLMRequest, max_attempts: int = 3) -> LLMCompletion:
        """
        Transform and send a request, retrying a fixed number of times.

        Raises:
            LLMError: For unsupported modes, unknown models or exhausted retries.
        """
        provider = self.select_provider(request.config.model)
        mode = request.config.mode
        if mode not in provider.supported_modes:
            raise LLMError(f"Provider {provider.name} does not support {mode} mode")

        provider_request = self.transform_to_prefill(request) if mode == "prefill" else self.transform_to_chat(request)
        limit = provider.max_stop_sequences
        if limit is not None and len(provider_request.stop_sequences) > limit:
            provider_request.stop_sequences = provider_request.stop_sequences[:limit]

        logger.debug(
            f"Calling {provider.name} for {request.config.model} ({mode}, {len(provider_request.messages)} turns)"
        )
        try:
            return await retry_llm(
                lambda: provider.complete(provider_request),
                max_attempts=max_attempts,
                delay_ms=self.retry_delay_ms,
            )
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"{provider.name} call failed: {e}", details={"model": request.config.model}) from e

    # Prefill

    def transform_to_prefill(self, request: LLMRequest) -> ProviderRequest:
        """
        Render the conversation as one growing transcript in assistant turns.

        Messages carrying images become user turns. Everything before the
        first cache-marked message is flushed as a cached block.
        """
        cfg = request.config
        bot_name = cfg.bot_inner_name
        delimiter = cfg.message_delimiter or ""
        joiner = "" if delimiter else "\n"
        caching = cfg.prompt_caching

        messages: list[ProviderMessage] = []
        if request.system_prompt:
            messages.append(ProviderMessage(
                role="system",
                content=[TextBlock(request.system_prompt)],
                cache_control=dict(EPHEMERAL) if caching else None,
            ))

        lines: list[str] = []
        passed_marker = False
        last_speaker: str | None = None
        count = len(request.messages)

        def flush(cache: bool = False) -> None:
            if lines:
                messages.append(ProviderMessage(
                    role="assistant",
                    content=[TextBlock(joiner.join(lines))],
                    cache_control=dict(EPHEMERAL) if cache else None,
                ))
                lines.clear()

        for i, msg in enumerate(request.messages):
            is_last = i == count - 1
            text, images = self.format_content_for_prefill(msg.content, msg.participant)
            is_empty = not text.strip() and not images

            if images:
                flush()
                content: list[ContentBlock] = []
                if text:
                    content.append(TextBlock(f"{msg.participant}: {text}"))
                content.extend(images)
                messages.append(ProviderMessage(role="user", content=content))
                last_speaker = msg.participant
                continue

            if is_empty and not is_last:
                continue

            if msg.cache_control and not passed_marker:
                flush(cache=caching)
                passed_marker = True

            has_tool_result = any(isinstance(b, ToolResultBlock) for b in msg.content)
            is_continuation = msg.participant == bot_name and last_speaker == bot_name and not has_tool_result

            if is_last and is_empty and is_continuation:
                continue
            if is_last and is_empty:
                lines.append(f"{msg.participant}: <thinking>" if cfg.prefill_thinking else f"{msg.participant}:")
            elif text:
                lines.append(f"{msg.participant}: {text}{delimiter}")
                if not has_tool_result:
                    last_speaker = msg.participant

        if lines and request.tools and len(lines) > TOOLS_TAIL_LINES:
            head, tail = lines[:-TOOLS_TAIL_LINES], lines[-TOOLS_TAIL_LINES:]
            if head:
                messages.append(ProviderMessage(role="assistant", content=[TextBlock(joiner.join(head))]))
            messages.append(ProviderMessage(role="user", content=[TextBlock(self.format_tools_for_prefill(request.tools))]))
            messages.append(ProviderMessage(role="assistant", content=[TextBlock(joiner.join(tail))]))
        else:
            flush()

        return self._provider_request(request, messages, tools=None)

    @staticmethod
    def format_content_for_prefill(content: list[ContentBlock], participant: str) -> tuple[str, list[ImageBlock]]:
        parts: list[str] = []
        images: list[ImageBlock] = []
        for block in content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ImageBlock):
                images.append(block)
            elif isinstance(block, ToolUseBlock):
                parts.append(f"{participant}>[{block.name}]: {json.dumps(block.input, ensure_ascii=False)}")
            elif isinstance(block, ToolResultBlock):
                parts.append(f"{participant}<[tool_result]: {block.content}")
        return "\n".join(parts), images

    @staticmethod
    def format_tools_for_prefill(tools: list[ToolDefinition]) -> str:
        """Compact usage examples matching the tag syntax the tool parser reads."""
        lines = [
            "Available tools. Call one by writing its tag with a JSON object inside, for example:",
        ]
        for tool in tools:
            schema = tool.input_schema or {}
            props = schema.get("properties") or {}
            required = schema.get("required") or list(props)[:1]
            example = {
                key: _EXAMPLE_VALUES.get((props.get(key) or {}).get("type", "string"), "...")
                for key in required
                if key in props
            }
            call = f"<{tool.name}>{json.dumps(example, ensure_ascii=False)}</{tool.name}>"
            lines.append(f"{call} - {tool.description}" if tool.description else call)
        return "\n".join(lines)

    # Chat

    def transform_to_chat(self, request: LLMRequest) -> ProviderRequest:
        """Render role-tagged turns: other speakers as user turns, the bot as assistant."""
        cfg = request.config
        bot_name = cfg.bot_inner_name
        messages: list[ProviderMessage] = []

        if request.system_prompt:
            messages.append(ProviderMessage(role="system", content=[TextBlock(request.system_prompt)]))
        if cfg.chat_persona_prompt:
            messages.append(ProviderMessage(role="system", content=[TextBlock(PERSONA_PROMPT.format(name=bot_name))]))

        buffer: list[ParticipantMessage] = []
        for msg in request.messages:
            is_bot = cfg.chat_bot_as_assistant and msg.participant in {bot_name, cfg.bot_username}
            if not is_bot:
                buffer.append(msg)
                continue
            if buffer:
                messages.append(self._merge_to_user_message(buffer))
                buffer = []
            text = msg.text
            if text.strip():
                messages.append(ProviderMessage(role="assistant", content=[TextBlock(text)]))

        if buffer:
            user = self._merge_to_user_message(buffer)
            if cfg.chat_persona_prefill:
                for block in reversed(user.content):
                    if isinstance(block, TextBlock):
                        block.text += f":\n{bot_name}:"
                        break
            messages.append(user)

        return self._provider_request(request, messages, tools=request.tools)

    @staticmethod
    def _merge_to_user_message(buffer: list[ParticipantMessage]) -> ProviderMessage:
        parts: list[str] = []
        images: list[ImageBlock] = []
        for msg in buffer:
            text = "\n".join(b.text for b in msg.content if isinstance(b, TextBlock))
            if text:
                parts.append(f"{msg.participant}: {text}")
            images.extend(b for b in msg.content if isinstance(b, ImageBlock))
        content: list[ContentBlock] = []
        if parts or not images:
            content.append(TextBlock("\n".join(parts)))
        content.extend(images)
        return ProviderMessage(role="user", content=content)

    @staticmethod
    def _provider_request(
        request: LLMRequest,
        messages: list[ProviderMessage],
        tools: list[ToolDefinition] | None,
    ) -> ProviderRequest:
        cfg = request.config
        return ProviderRequest(
            model=cfg.model,
            messages=messages,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            stop_sequences=list(request.stop_sequences),
            tools=tools or None,
            presence_penalty=cfg.presence_penalty,
            frequency_penalty=cfg.frequency_penalty,
            mode=cfg.mode,
        )
