"""Context builder: turns platform history into a bounded LLM request."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace

from loguru import logger

from parlor.agent.images import ImageTooLarge, encode_image, fit_image
from parlor.agent.tools.base import ToolCall, ToolResult
from parlor.agent.tools.cache import ToolCacheEntry
from parlor.bus.events import CachedImage, PlatformContext, PlatformMessage
from parlor.config.schema import BotConfig
from parlor.providers.base import (
    ImageBlock,
    LLMRequest,
    ModelConfig,
    ParticipantMessage,
    TextBlock,
)
from parlor.session.activations import (
    Activation,
    Completion,
    build_completion_map,
    build_message_context_map,
    get_phantom_insertions,
)

CACHE_MARKER_OFFSET = 20
EPHEMERAL = {"type": "ephemeral"}
_MENTION_RE = re.compile(r"@([\w.\-]+)")


@dataclass
class BuildContextParams:
    """Inputs to one context build."""
    context: PlatformContext
    config: BotConfig
    tool_cache: list[ToolCacheEntry] = field(default_factory=list)
    last_cache_marker: str | None = None
    messages_since_roll: int = 0
    bot_username: str | None = None
    activations: list[Activation] | None = None


@dataclass
class ContextBuildResult:
    request: LLMRequest
    did_truncate: bool
    cache_marker: str | None


class ContextBuilder:
    """
    Deterministic, I/O-free assembly of the LLM request.

    Steps: merge bot runs, filter hidden messages, normalize with images,
    interleave cached tool use, replay stored activations, bound the size,
    place the cache marker and derive stop sequences.
    """

    def build_context(self, params: BuildContextParams) -> ContextBuildResult:
        config = params.config
        bot_name = config.inner_name

        platform_messages = self.merge_consecutive_bot_messages(params.context.messages, bot_name)
        platform_messages = self.filter_hidden_messages(platform_messages, config.hide_reaction)

        messages = self.format_messages(platform_messages, params.context.images, config)
        messages = self.interleave_tool_cache(messages, params.tool_cache, bot_name)

        if config.preserve_thinking_context and params.activations:
            existing = [mid for m in platform_messages for mid in m.all_ids]
            messages = self.replay_activations(messages, params.activations, existing, bot_name)

        messages, did_truncate = self.apply_limits(messages, params.messages_since_roll, config)

        cache_marker = self.determine_cache_marker(messages, params.last_cache_marker, did_truncate)
        if cache_marker and config.prompt_caching:
            for msg in messages:
                if msg.message_id == cache_marker:
                    msg.cache_control = dict(EPHEMERAL)
                    break

        messages.append(ParticipantMessage(participant=bot_name, content=[TextBlock("")]))
        stop_sequences = self.build_stop_sequences(messages, config)

        logger.debug(
            f"Built context: {len(messages)} messages, truncated={did_truncate}, "
            f"marker={cache_marker}, {len(stop_sequences)} stop sequences"
        )
        request = LLMRequest(
            messages=messages,
            config=self.extract_model_config(config, params.bot_username),
            system_prompt=config.system_prompt,
            stop_sequences=stop_sequences,
        )
        return ContextBuildResult(request=request, did_truncate=did_truncate, cache_marker=cache_marker)

    # Pipeline steps

    @staticmethod
    def merge_consecutive_bot_messages(messages: list[PlatformMessage], bot_name: str) -> list[PlatformMessage]:
        """Join runs of bot messages with a space. Hidden ``.`` messages never merge."""
        merged: list[PlatformMessage] = []
        for msg in messages:
            is_bot = msg.author.display_name == bot_name
            hidden = msg.content.strip().startswith(".")
            last = merged[-1] if merged else None
            if (
                is_bot
                and not hidden
                and last is not None
                and last.author.display_name == bot_name
                and not last.content.strip().startswith(".")
            ):
                merged[-1] = replace(
                    last,
                    content=f"{last.content} {msg.content}",
                    attachments=last.attachments + msg.attachments,
                    merged_ids=last.all_ids + [msg.id],
                )
            else:
                merged.append(replace(msg, attachments=list(msg.attachments)))
        return merged

    @staticmethod
    def filter_hidden_messages(messages: list[PlatformMessage], hide_emoji: str) -> list[PlatformMessage]:
        kept = []
        for msg in messages:
            if msg.content.strip().startswith("."):
                continue
            if hide_emoji and (msg.has_reaction(hide_emoji) or hide_emoji in msg.content):
                continue
            kept.append(msg)
        return kept

    def format_messages(
        self,
        messages: list[PlatformMessage],
        images: list[CachedImage],
        config: BotConfig,
    ) -> list[ParticipantMessage]:
        selected = self.select_images(messages, images, config) if config.include_images else {}
        out: list[ParticipantMessage] = []
        for msg in messages:
            content: list = []
            if msg.content.strip():
                content.append(TextBlock(msg.content))
            content.extend(selected.get(msg.id, []))
            out.append(ParticipantMessage(
                participant=msg.author.display_name,
                content=content,
                timestamp=msg.timestamp,
                message_id=msg.id,
                source_ids=list(msg.all_ids),
            ))
        return out

    @staticmethod
    def select_images(
        messages: list[PlatformMessage],
        images: list[CachedImage],
        config: BotConfig,
    ) -> dict[str, list[ImageBlock]]:
        """
        Pick images most-recent-first within the count and total budget.

        Each image is fitted to the per-image budget first; images that cannot
        be fitted are dropped.
        """
        by_url = {img.url: img for img in images}
        chosen: dict[str, list[ImageBlock]] = {}
        count = 0
        total = 0
        for msg in reversed(messages):
            if count >= config.max_images:
                break
            blocks: list[ImageBlock] = []
            for attachment in reversed(msg.attachments):
                if count >= config.max_images:
                    break
                if not (attachment.content_type or "").startswith("image/"):
                    continue
                cached = by_url.get(attachment.url)
                if cached is None:
                    continue
                try:
                    data, media_type = fit_image(cached.data, cached.media_type, config.max_image_bytes)
                except ImageTooLarge as e:
                    logger.warning(f"Dropping image {attachment.url}: {e}")
                    continue
                encoded = encode_image(data)
                if total + len(encoded) > config.max_total_image_bytes:
                    logger.warning(f"Skipping image {attachment.url}: total image budget reached")
                    continue
                blocks.insert(0, ImageBlock(data=encoded, media_type=media_type))
                count += 1
                total += len(encoded)
            if blocks:
                chosen[msg.id] = blocks
        return chosen

    @staticmethod
    def interleave_tool_cache(
        messages: list[ParticipantMessage],
        tool_cache: list[ToolCacheEntry],
        bot_name: str,
    ) -> list[ParticipantMessage]:
        """Insert each cached call and its result right after the triggering message."""
        if not tool_cache:
            return messages
        by_trigger: dict[str, list[ParticipantMessage]] = {}
        for entry in tool_cache:
            if entry.call.message_id is None:
                continue
            by_trigger.setdefault(entry.call.message_id, []).extend([
                ParticipantMessage(
                    participant=bot_name,
                    content=[TextBlock(entry.call.original_completion_text)],
                    timestamp=entry.call.timestamp,
                ),
                ParticipantMessage(
                    participant=f"System<[{entry.call.name}]",
                    content=[TextBlock(entry.result.text)],
                    timestamp=entry.call.timestamp,
                ),
            ])

        out: list[ParticipantMessage] = []
        for msg in messages:
            out.append(msg)
            for sid in msg.source_ids or ([msg.message_id] if msg.message_id else []):
                out.extend(by_trigger.pop(sid, []))
        return out

    @staticmethod
    def replay_activations(
        messages: list[ParticipantMessage],
        activations: list[Activation],
        existing_ids: list[str],
        bot_name: str,
    ) -> list[ParticipantMessage]:
        """
        Restore what the model actually produced in earlier activations.

        Per-message context chunks win over whole-completion text, and a
        completion is replayed only at its first surviving sent message.
        Phantom completions are inserted after their anchor.
        """
        context_map = build_message_context_map(activations)
        completion_map = build_completion_map(activations)
        phantoms = get_phantom_insertions(activations, existing_ids)
        owner: dict[int, str] = {id(c): a.id for a in activations for c in a.completions}
        used: set[tuple[str, int]] = set()

        replayed: list[ParticipantMessage] = []
        for msg in messages:
            ids = msg.source_ids or ([msg.message_id] if msg.message_id else [])
            parts: list[str] = []
            activation_id: str | None = None
            known = False
            for sid in ids:
                if sid in context_map:
                    known = True
                    parts.append(context_map[sid])
                    if sid in completion_map:
                        activation, completion = completion_map[sid]
                        activation_id = activation_id or activation.id
                        used.add((activation.id, completion.index))
                elif sid in completion_map:
                    known = True
                    activation, completion = completion_map[sid]
                    activation_id = activation_id or activation.id
                    key = (activation.id, completion.index)
                    if key not in used:
                        used.add(key)
                        parts.append(completion.text)

            if known:
                if not parts:
                    continue
                text_blocks = [TextBlock(" ".join(parts))]
                others = [b for b in msg.content if not isinstance(b, TextBlock)]
                msg = replace(msg, content=text_blocks + others, activation_id=activation_id)
            replayed.append(msg)

            for sid in ids:
                for completion in phantoms.pop(sid, []):
                    replayed.append(_phantom_message(completion, bot_name, owner.get(id(completion))))

        return _merge_same_activation(replayed, bot_name)

    @staticmethod
    def apply_limits(
        messages: list[ParticipantMessage],
        messages_since_roll: int,
        config: BotConfig,
    ) -> tuple[list[ParticipantMessage], bool]:
        """
        Bound the assembled context.

        Above the hard ceiling the context is always cut to the normal limit.
        Otherwise nothing is cut until the rolling threshold is reached.
        """
        total = sum(m.text_size() for m in messages)
        hard_max = config.hard_max_characters
        normal_limit = config.normal_character_limit

        if total > hard_max:
            logger.warning(f"Context of {total} chars exceeds hard max {hard_max}, truncating to {normal_limit}")
            return _truncate_to_limit(messages, normal_limit), True

        if messages_since_roll < config.rolling_threshold:
            return list(messages), False

        if total > normal_limit:
            logger.info(f"Rolling: {total} chars over limit {normal_limit}, truncating")
            truncated = _truncate_to_limit(messages, normal_limit)
            return truncated, len(truncated) < len(messages)

        limit = config.recency_window_messages
        if limit is not None and len(messages) > limit:
            logger.info(f"Rolling: {len(messages)} messages over limit {limit}, truncating")
            return messages[len(messages) - limit:], True

        return list(messages), False

    @staticmethod
    def determine_cache_marker(
        messages: list[ParticipantMessage],
        last_marker: str | None,
        did_truncate: bool,
    ) -> str | None:
        candidates = [m.message_id for m in messages if m.message_id]
        if not candidates:
            return None
        if not did_truncate and last_marker and last_marker in candidates:
            return last_marker
        return candidates[max(0, len(candidates) - CACHE_MARKER_OFFSET)]

    @staticmethod
    def build_stop_sequences(messages: list[ParticipantMessage], config: BotConfig) -> list[str]:
        """Delimiter, then recent speakers and @mentions as ``Name:``, then configured sequences."""
        sequences: list[str] = []
        if config.message_delimiter:
            sequences.append(config.message_delimiter)

        names: list[str] = []
        mentions: list[str] = []
        for msg in reversed(messages):
            if len(names) >= config.recent_participant_count:
                break
            if msg.participant and msg.participant not in names:
                names.append(msg.participant)
            for mention in _MENTION_RE.findall(msg.text):
                if mention not in mentions:
                    mentions.append(mention)

        sequences.extend(f"{name}:" for name in names)
        sequences.extend(f"{name}:" for name in mentions)
        sequences.extend(config.stop_sequences)

        seen: set[str] = set()
        return [s for s in sequences if s and not (s in seen or seen.add(s))]

    @staticmethod
    def extract_model_config(config: BotConfig, bot_username: str | None = None) -> ModelConfig:
        return ModelConfig(
            model=config.continuation_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
            mode=config.mode,
            bot_inner_name=config.inner_name,
            bot_username=bot_username,
            prefill_thinking=config.prefill_thinking,
            prompt_caching=config.prompt_caching,
            message_delimiter=config.message_delimiter,
            chat_persona_prompt=config.chat_persona_prompt,
            chat_persona_prefill=config.chat_persona_prefill,
            chat_bot_as_assistant=config.chat_bot_as_assistant,
            presence_penalty=config.presence_penalty,
            frequency_penalty=config.frequency_penalty,
        )


def format_tool_results(pairs: list[tuple[ToolCall, ToolResult]]) -> list[ParticipantMessage]:
    """Tool results as ``System<[name]`` turns for the next model call."""
    return [
        ParticipantMessage(participant=f"System<[{call.name}]", content=[TextBlock(result.text)])
        for call, result in pairs
    ]


def _truncate_to_limit(messages: list[ParticipantMessage], char_limit: int) -> list[ParticipantMessage]:
    """Keep the newest messages whose combined size fits ``char_limit``."""
    kept = 0
    cutoff = len(messages)
    for i in range(len(messages) - 1, -1, -1):
        size = messages[i].text_size()
        if kept + size > char_limit:
            break
        kept += size
        cutoff = i
    return messages[cutoff:]


def _phantom_message(completion: Completion, bot_name: str, activation_id: str | None) -> ParticipantMessage:
    return ParticipantMessage(
        participant=bot_name,
        content=[TextBlock(completion.text)],
        activation_id=activation_id,
    )


def _merge_same_activation(messages: list[ParticipantMessage], bot_name: str) -> list[ParticipantMessage]:
    merged: list[ParticipantMessage] = []
    for msg in messages:
        last = merged[-1] if merged else None
        if (
            last is not None
            and msg.participant == bot_name
            and last.participant == bot_name
            and msg.activation_id is not None
            and msg.activation_id == last.activation_id
            and not msg.has_images
            and not last.has_images
        ):
            merged[-1] = replace(
                last,
                content=[TextBlock(f"{last.text} {msg.text}".strip())],
                message_id=last.message_id or msg.message_id,
                source_ids=last.source_ids + msg.source_ids,
            )
        else:
            merged.append(msg)
    return merged
