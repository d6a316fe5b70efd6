"""Lexer for tool calls written as XML-ish tags in free-form model output.

Code is masked before matching, so a tag inside a fenced block or an
inline code span is never treated as an invocation.
"""

import json
import random
import re
import time
from typing import Iterable

from loguru import logger

from parlor.agent.tools.base import ToolCall

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]*`")
_TOOL_TAG_RE = re.compile(r"<(\w+)>\s*(\{[\s\S]*?\})?\s*</\1>")

CODE_BLOCK_PLACEHOLDER = "[CODE_BLOCK]"
INLINE_CODE_PLACEHOLDER = "[INLINE_CODE]"


def generate_call_id() -> str:
    """Return an id of the form ``call_{epoch_ms}_{random}``."""
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=9))
    return f"call_{int(time.time() * 1000)}_{suffix}"


def mask_code(text: str) -> str:
    """Replace fenced blocks first, then inline code spans."""
    masked = _FENCED_CODE_RE.sub(CODE_BLOCK_PLACEHOLDER, text)
    return _INLINE_CODE_RE.sub(INLINE_CODE_PLACEHOLDER, masked)


def parse_tool_calls(text: str, known_tools: Iterable[str]) -> list[ToolCall]:
    """
    Extract tool invocations of the form ``<name>{json}</name>``.

    Args:
        text: Raw model output.
        known_tools: Names of registered tools. Other tags are ignored.

    Returns:
        Calls in order of appearance. Matches with malformed JSON are
        logged and skipped.
    """
    names = set(known_tools)
    if not text or not names:
        return []

    calls: list[ToolCall] = []
    for match in _TOOL_TAG_RE.finditer(mask_code(text)):
        name, raw = match.group(1), match.group(2)
        if name not in names:
            continue
        params: dict = {}
        if raw:
            try:
                params = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping {name} call with malformed JSON: {e}")
                continue
            if not isinstance(params, dict):
                logger.warning(f"Skipping {name} call: input is {type(params).__name__}, expected object")
                continue
        calls.append(ToolCall(id=generate_call_id(), name=name, input=params))
    return calls


def strip_tool_calls(text: str, known_tools: Iterable[str]) -> str:
    """Remove invocation tags for known tools, leaving code spans untouched."""
    names = set(known_tools)
    if not text or not names:
        return text

    # Mask code, strip tags on the masked copy, then restore the code spans.
    spans: list[str] = []

    def _stash(m: re.Match) -> str:
        spans.append(m.group(0))
        return f"\x00{len(spans) - 1}\x00"

    masked = _INLINE_CODE_RE.sub(_stash, _FENCED_CODE_RE.sub(_stash, text))

    def _drop(m: re.Match) -> str:
        return "" if m.group(1) in names else m.group(0)

    stripped = _TOOL_TAG_RE.sub(_drop, masked)
    restored = re.sub(r"\x00(\d+)\x00", lambda m: spans[int(m.group(1))], stripped)
    return restored.strip()
