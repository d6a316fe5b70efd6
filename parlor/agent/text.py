"""Post-processing of raw completion text before it reaches the chat."""

import re
from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

from parlor.agent.tools.parser import strip_tool_calls
from parlor.bus.events import PlatformMessage

_THINKING_RE = re.compile(r"<thinking>([\s\S]*?)</thinking>")
_OPEN_FENCE_RE = re.compile(r"```[^\n]*\n[^`]*$")
_REPLY_PREFIX_RE = re.compile(r"^\s*<reply:@[^>]+>\s*")


@dataclass
class ThinkingSplit:
    stripped: str
    thoughts: list[str] = field(default_factory=list)


def strip_thinking_blocks(text: str) -> ThinkingSplit:
    """
    Remove ``<thinking>`` blocks, keeping ones escaped in backticks or code fences.

    Returns the remaining text and the inner text of each removed block.
    """
    result = text
    thoughts: list[str] = []
    for match in reversed(list(_THINKING_RE.finditer(text))):
        before, after = text[:match.start()], text[match.end():]
        escaped = (
            (before.endswith("`") and after.startswith("`"))
            or before.endswith("```")
            or bool(_OPEN_FENCE_RE.search(before))
        )
        if escaped:
            continue
        thoughts.insert(0, match.group(1).strip())
        result = result[:match.start()] + result[match.end():]
    return ThinkingSplit(stripped=result, thoughts=thoughts)


def strip_tool_calls_from_text(text: str, tool_names: Iterable[str]) -> str:
    """Leave only the preamble: thinking and tool-call tags removed."""
    result = strip_thinking_blocks(text).stripped
    result = strip_tool_calls(result, tool_names)
    return re.sub(r"\n{3,}", "\n\n", result).strip()


def strip_reply_prefix(text: str) -> str:
    """Drop a leading ``<reply:@name>`` the model may emit; responses are already replies."""
    return _REPLY_PREFIX_RE.sub("", text, count=1)


def truncate_at_participant(
    text: str,
    messages: list[PlatformMessage],
    bot_names: Iterable[str],
    stop_sequences: Iterable[str] | None = None,
) -> str:
    """
    Cut a completion where the model starts speaking as someone else.

    A response that opens as another participant is discarded entirely.
    Otherwise the text is cut at the earliest ``\\nName:`` or configured
    stop sequence.
    """
    excluded = {n for n in bot_names if n}
    participants: set[str] = set()
    for msg in messages:
        for name in (msg.author.username, msg.author.display_name):
            if name and name not in excluded:
                participants.add(name)

    for participant in participants:
        if text.startswith(f"{participant}:"):
            logger.warning(f"Response starts as {participant}, discarding")
            return ""

    earliest = -1
    needles = [f"\n{p}:" for p in participants] + [s for s in stop_sequences or [] if s]
    for needle in needles:
        index = text.find(needle)
        if index != -1 and (earliest == -1 or index < earliest):
            earliest = index

    if earliest == -1:
        return text
    logger.info(f"Truncated completion at position {earliest} of {len(text)}")
    return text[:earliest]
