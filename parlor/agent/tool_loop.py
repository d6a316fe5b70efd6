"""Tool execution loop: alternate model calls and tool calls until the model answers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Iterable

from loguru import logger

from parlor.agent.context import format_tool_results
from parlor.agent.text import strip_thinking_blocks, strip_tool_calls_from_text
from parlor.agent.tools.base import ToolCall, ToolResult
from parlor.agent.tools.cache import ToolCacheStore
from parlor.agent.tools.parser import parse_tool_calls
from parlor.agent.tools.registry import ToolRegistry
from parlor.config.schema import BotConfig
from parlor.providers.base import LLMCompletion, LLMRequest, ParticipantMessage, TextBlock, Usage
from parlor.providers.router import LLMRouter
from parlor.session.activations import ActivationStore

if TYPE_CHECKING:
    from parlor.platform.base import PlatformConnector

MAX_CONTINUATIONS = 5
THINKING_INLINE_LIMIT = 1800
TOOL_OUTPUT_PREVIEW_CHARS = 200
MAX_DEPTH_TEXT = "[Max tool depth reached]"


@dataclass
class ToolLoopResult:
    completion: LLMCompletion
    tool_call_ids: list[str] = field(default_factory=list)
    preamble_message_ids: list[str] = field(default_factory=list)


def completion_text(completion: LLMCompletion, joiner: str = "\n") -> str:
    return joiner.join(b.text for b in completion.content if isinstance(b, TextBlock))


async def send_thinking(
    connector: "PlatformConnector",
    channel_id: str,
    thoughts: list[str],
    reply_to: str | None = None,
) -> list[str]:
    """Post reasoning as a hidden ``.💭`` message, or as an attachment when long."""
    if not thoughts:
        return []
    thinking = "\n\n---\n\n".join(thoughts)
    inline = f".💭 {thinking}"
    if len(inline) <= THINKING_INLINE_LIMIT:
        return await connector.send_message(channel_id, inline, reply_to)
    return await connector.send_message_with_attachment(
        channel_id, ".💭", "thinking.txt", thinking.encode("utf-8"), reply_to
    )


def format_tool_output_preview(bot_name: str, call: ToolCall, result: ToolResult) -> str:
    """Two hidden lines: the call input and a flattened, clipped output."""
    raw = result.text
    flat = " ".join(raw.split())
    if len(flat) > TOOL_OUTPUT_PREVIEW_CHARS:
        flat = f"{flat[:TOOL_OUTPUT_PREVIEW_CHARS]}... ({len(raw)} chars)"
    args = json.dumps(call.input, ensure_ascii=False)
    return f".{bot_name}>[{call.name}]: {args}\n.{bot_name}<[{call.name}]: {flat}"


class ToolExecutionLoop:
    """
    Drives one activation's model/tool exchange.

    Each round calls the model, repairs completions cut off inside an open
    tag, executes any tool calls and feeds the results back as
    ``System<[tool]`` turns. The loop ends when a completion has no tool
    calls or ``max_tool_depth`` rounds have run.
    """

    def __init__(
        self,
        router: LLMRouter,
        registry: ToolRegistry,
        tool_cache: ToolCacheStore,
        activations: ActivationStore,
        connector: "PlatformConnector",
        bot_id: str,
    ):
        self.router = router
        self.registry = registry
        self.tool_cache = tool_cache
        self.activations = activations
        self.connector = connector
        self.bot_id = bot_id

    async def run(
        self,
        request: LLMRequest,
        config: BotConfig,
        channel_id: str,
        triggering_message_id: str | None,
        activation_id: str | None = None,
    ) -> ToolLoopResult:
        prefill = config.mode == "prefill"
        bot_name = config.inner_name
        tool_call_ids: list[str] = []
        preamble_ids: list[str] = []
        current = replace(request, messages=list(request.messages))

        for depth in range(config.max_tool_depth):
            completion = await self.router.complete(current, max_attempts=config.llm_retries)

            if prefill and completion.stop_reason == "stop_sequence":
                text = completion_text(completion, "")
                unclosed = self.detect_unclosed_xml_tag(text, self.registry.tool_names, config.prefill_thinking)
                if unclosed:
                    stop = self.matched_stop_sequence(completion, current, bot_name)
                    if stop:
                        logger.warning(f"Stop sequence {stop!r} fired inside <{unclosed}>, continuing completion")
                        completion = await self.continue_after_stop_sequence(current, completion, stop, config)
                    else:
                        logger.warning(f"Stop sequence fired inside <{unclosed}> but none was sent, not continuing")

            if config.prefill_thinking:
                for block in completion.content:
                    if isinstance(block, TextBlock) and block.text:
                        block.text = "<thinking>" + block.text
                        break

            full_text = completion_text(completion)
            calls = [
                ToolCall(id=use.id, name=use.name, input=use.input)
                for use in completion.tool_uses
            ]
            if not calls and prefill:
                calls = parse_tool_calls(full_text, self.registry.tool_names)
                if calls:
                    logger.debug(f"Parsed {len(calls)} tool calls from prefill text")

            if not calls:
                return ToolLoopResult(completion, tool_call_ids, preamble_ids)

            logger.debug(f"Executing {len(calls)} tools at depth {depth}")

            if prefill:
                if config.debug_thinking:
                    await send_thinking(
                        self.connector, channel_id, strip_thinking_blocks(full_text).thoughts, triggering_message_id
                    )
                preamble = strip_tool_calls_from_text(full_text, self.registry.tool_names)
                sent: list[str] = []
                if preamble:
                    sent = await self.connector.send_message(channel_id, preamble, triggering_message_id)
                    preamble_ids.extend(sent)
                if activation_id and config.preserve_thinking_context:
                    self.activations.add_completion(activation_id, full_text, sent)
                    if sent:
                        self.activations.set_message_context(activation_id, sent[0], full_text)

            pairs: list[tuple[ToolCall, ToolResult]] = []
            for call in calls:
                call.message_id = triggering_message_id
                call.original_completion_text = full_text
                result = await self.registry.execute_tool(call)
                self.tool_cache.append(self.bot_id, channel_id, call, result)
                pairs.append((call, result))
                tool_call_ids.append(call.id)
                if result.error:
                    logger.warning(f"Tool {call.name} returned error: {result.error}")
                if config.tool_output_visible:
                    await self.connector.send_webhook(
                        channel_id, format_tool_output_preview(bot_name, call, result), bot_name
                    )

            messages = current.messages
            if messages and messages[-1].participant == bot_name and messages[-1].is_empty():
                messages = messages[:-1]
            current = replace(current, messages=[
                *messages,
                ParticipantMessage(participant=bot_name, content=[TextBlock(full_text)]),
                *format_tool_results(pairs),
                ParticipantMessage(participant=bot_name, content=[TextBlock("")]),
            ])

        logger.warning(f"Reached max tool depth ({config.max_tool_depth})")
        return ToolLoopResult(
            completion=LLMCompletion(content=[TextBlock(MAX_DEPTH_TEXT)], stop_reason="end_turn", usage=Usage()),
            tool_call_ids=tool_call_ids,
            preamble_message_ids=preamble_ids,
        )

    @staticmethod
    def detect_unclosed_xml_tag(text: str, tool_names: Iterable[str], prefill_thinking: bool = False) -> str | None:
        """Name of the last opened but unclosed tag: ``thinking`` first, then tools."""
        if text.rfind("<thinking>") > text.rfind("</thinking>"):
            return "thinking"
        for name in tool_names:
            if text.rfind(f"<{name}>") > text.rfind(f"</{name}>"):
                return name
        if prefill_thinking and "</thinking>" not in text:
            return "thinking"
        return None

    @staticmethod
    def matched_stop_sequence(completion: LLMCompletion, request: LLMRequest, bot_name: str) -> str | None:
        """
        The stop sequence that ended a completion.

        Vendors that do not echo the matched sequence get the most recent
        other participant's ``Name:`` prefix, or the first sequence sent.
        """
        reported = completion.raw.get("stop_sequence")
        if reported:
            return str(reported)
        sequences = [s for s in request.stop_sequences if s]
        for sequence in sequences:
            if sequence.endswith(":") and sequence[:-1].strip() != bot_name:
                return sequence
        return sequences[0] if sequences else None

    async def continue_after_stop_sequence(
        self,
        request: LLMRequest,
        partial: LLMCompletion,
        stop_sequence: str,
        config: BotConfig,
        max_continuations: int = MAX_CONTINUATIONS,
    ) -> LLMCompletion:
        """
        Resume a completion cut off by a stop sequence inside an open tag.

        The stop text is put back, the accumulated text is prefilled into the
        trailing bot turn and the model is called again.
        """
        bot_name = config.inner_name
        accumulated = completion_text(partial, "")
        last = partial
        base = list(request.messages)
        prefix = ""
        if base and base[-1].participant == bot_name:
            prefix = base[-1].text
            base = base[:-1]

        continuations = 0
        while continuations < max_continuations:
            accumulated += stop_sequence
            continued = replace(request, messages=[
                *base,
                ParticipantMessage(participant=bot_name, content=[TextBlock(prefix + accumulated)]),
            ])
            logger.debug(f"Continuation {continuations + 1} after {stop_sequence!r} ({len(accumulated)} chars)")
            last = await self.router.complete(continued, max_attempts=config.llm_retries)
            accumulated += completion_text(last, "")

            if last.stop_reason != "stop_sequence":
                break
            unclosed = self.detect_unclosed_xml_tag(accumulated, self.registry.tool_names, config.prefill_thinking)
            next_stop = self.matched_stop_sequence(last, request, bot_name)
            if not (unclosed and next_stop):
                break
            stop_sequence = next_stop
            continuations += 1

        if continuations >= max_continuations:
            logger.warning(f"Reached max continuations ({max_continuations}) for stop sequence recovery")
        return replace(last, content=[TextBlock(accumulated)])
