"""Activation records: every model turn of a response cycle, including invisible ones."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from parlor.agent.tools.base import ToolCall, ToolResult
from parlor.utils.helpers import ensure_dir


def _dt(value: Any) -> datetime | None:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


@dataclass
class ActivationTrigger:
    """What started an activation and where its output is anchored."""
    type: str  # "mention" | "reply" | "random" | "m_command"
    anchor_message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "anchor_message_id": self.anchor_message_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActivationTrigger":
        return cls(type=str(data.get("type") or "mention"), anchor_message_id=data.get("anchor_message_id"))


@dataclass
class Completion:
    """
    One model turn inside an activation.

    A completion with no sent message ids never reached the chat; it is a
    phantom and is replayed after its anchor.
    """
    index: int
    text: str
    sent_message_ids: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def is_phantom(self) -> bool:
        return not self.sent_message_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "text": self.text,
            "sent_message_ids": list(self.sent_message_ids),
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "tool_results": [r.to_dict() for r in self.tool_results],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Completion":
        return cls(
            index=int(data.get("index") or 0),
            text=str(data.get("text") or ""),
            sent_message_ids=[str(x) for x in data.get("sent_message_ids") or []],
            tool_calls=[ToolCall.from_dict(c) for c in data.get("tool_calls") or []],
            tool_results=[ToolResult.from_dict(r) for r in data.get("tool_results") or []],
        )


@dataclass
class Activation:
    """A complete response cycle for one trigger."""
    id: str
    bot_id: str
    channel_id: str
    trigger: ActivationTrigger
    completions: list[Completion] = field(default_factory=list)
    message_contexts: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None

    @property
    def sent_message_ids(self) -> list[str]:
        return [mid for c in self.completions for mid in c.sent_message_ids]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "channel_id": self.channel_id,
            "trigger": self.trigger.to_dict(),
            "completions": [c.to_dict() for c in self.completions],
            "message_contexts": dict(self.message_contexts),
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Activation":
        return cls(
            id=str(data.get("id") or ""),
            bot_id=str(data.get("bot_id") or ""),
            channel_id=str(data.get("channel_id") or ""),
            trigger=ActivationTrigger.from_dict(data.get("trigger") or {}),
            completions=[Completion.from_dict(c) for c in data.get("completions") or []],
            message_contexts={str(k): str(v) for k, v in (data.get("message_contexts") or {}).items()},
            started_at=_dt(data.get("started_at")) or datetime.now(timezone.utc),
            ended_at=_dt(data.get("ended_at")),
        )


class ActivationStore:
    """
    Persists activations as one JSON file each under
    ``{cache_dir}/activations/{bot}/{channel}/``.

    In-flight activations live in memory until complete_activation().
    """

    def __init__(self, cache_dir: Path | str):
        self.dir = ensure_dir(Path(cache_dir) / "activations")
        self._active: dict[str, Activation] = {}

    def _channel_dir(self, bot_id: str, channel_id: str) -> Path:
        return self.dir / bot_id / channel_id

    def start_activation(self, bot_id: str, channel_id: str, trigger: ActivationTrigger) -> Activation:
        activation = Activation(
            id=uuid.uuid4().hex[:12],
            bot_id=bot_id,
            channel_id=channel_id,
            trigger=trigger,
        )
        self._active[activation.id] = activation
        logger.debug(
            f"Started activation {activation.id} for {bot_id}:{channel_id} "
            f"({trigger.type}, anchor={trigger.anchor_message_id})"
        )
        return activation

    def get_active(self, activation_id: str) -> Activation | None:
        return self._active.get(activation_id)

    def add_completion(
        self,
        activation_id: str,
        text: str,
        sent_message_ids: list[str] | None = None,
        tool_calls: list[ToolCall] | None = None,
        tool_results: list[ToolResult] | None = None,
    ) -> Completion:
        """
        Append a completion to an in-flight activation.

        Raises:
            KeyError: If the activation is unknown or already completed.
        """
        activation = self._active.get(activation_id)
        if activation is None:
            raise KeyError(f"Activation {activation_id} not found or already completed")
        completion = Completion(
            index=len(activation.completions),
            text=text,
            sent_message_ids=list(sent_message_ids or []),
            tool_calls=list(tool_calls or []),
            tool_results=list(tool_results or []),
        )
        activation.completions.append(completion)
        logger.debug(
            f"Activation {activation_id}: completion #{completion.index} "
            f"({'phantom' if completion.is_phantom else 'sent'}, {len(text)} chars)"
        )
        return completion

    def set_message_context(self, activation_id: str, message_id: str, context_chunk: str) -> None:
        """Record the exact model-visible text behind one sent message."""
        activation = self._active.get(activation_id)
        if activation is None:
            logger.warning(f"Message context for unknown activation {activation_id}")
            return
        activation.message_contexts[message_id] = context_chunk

    def abort_activation(self, activation_id: str) -> None:
        """Forget an in-flight activation without writing it."""
        if self._active.pop(activation_id, None) is not None:
            logger.debug(f"Aborted activation {activation_id}")

    def complete_activation(self, activation_id: str) -> Path | None:
        """Stamp the end time, write the record and forget it from memory."""
        activation = self._active.pop(activation_id, None)
        if activation is None:
            logger.warning(f"Tried to complete unknown activation {activation_id}")
            return None
        activation.ended_at = datetime.now(timezone.utc)
        directory = ensure_dir(self._channel_dir(activation.bot_id, activation.channel_id))
        stamp = activation.started_at.isoformat().replace(":", "-").replace(".", "-")
        path = directory / f"{stamp}-{activation.id}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(activation.to_dict(), f, ensure_ascii=False, indent=2, default=str)
        phantoms = sum(1 for c in activation.completions if c.is_phantom)
        logger.debug(
            f"Persisted activation {activation.id}: {len(activation.completions)} completions, {phantoms} phantom"
        )
        return path

    def load_activations(
        self,
        bot_id: str,
        channel_id: str,
        existing_message_ids: Iterable[str],
    ) -> list[Activation]:
        """Load stored activations, skipping those whose sent messages are all gone."""
        directory = self._channel_dir(bot_id, channel_id)
        if not directory.exists():
            return []
        existing = set(existing_message_ids)
        activations: list[Activation] = []
        skipped = 0
        for path in sorted(directory.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    activation = Activation.from_dict(json.load(f))
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load activation {path}: {e}")
                continue
            sent = activation.sent_message_ids
            if sent and not any(mid in existing for mid in sent):
                skipped += 1
                continue
            activations.append(activation)
        logger.debug(f"Loaded {len(activations)} activations for {bot_id}:{channel_id} ({skipped} skipped)")
        return activations

    def remove_activations_for_message(self, bot_id: str, channel_id: str, message_id: str) -> int:
        """
        Detach a deleted message from stored activations.

        Files left with no sent messages at all are deleted. Returns the
        number of files touched.
        """
        directory = self._channel_dir(bot_id, channel_id)
        if not directory.exists():
            return 0
        touched = 0
        for path in directory.glob("*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to read activation {path}: {e}")
                continue
            activation = Activation.from_dict(data)
            modified = False
            for completion in activation.completions:
                if message_id in completion.sent_message_ids:
                    completion.sent_message_ids = [m for m in completion.sent_message_ids if m != message_id]
                    modified = True
            if not modified:
                continue
            touched += 1
            if not activation.sent_message_ids:
                path.unlink(missing_ok=True)
                logger.debug(f"Deleted orphaned activation {path.name}")
            else:
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(activation.to_dict(), f, ensure_ascii=False, indent=2, default=str)
        return touched


def build_completion_map(activations: list[Activation]) -> dict[str, tuple[Activation, Completion]]:
    """Map each sent message id to the completion that produced it."""
    out: dict[str, tuple[Activation, Completion]] = {}
    for activation in activations:
        for completion in activation.completions:
            for mid in completion.sent_message_ids:
                out[mid] = (activation, completion)
    return out


def build_message_context_map(activations: list[Activation]) -> dict[str, str]:
    out: dict[str, str] = {}
    for activation in activations:
        out.update(activation.message_contexts)
    return out


def get_phantom_insertions(
    activations: list[Activation],
    existing_message_ids: Iterable[str],
) -> dict[str, list[Completion]]:
    """
    Phantom completions keyed by the message they follow.

    The anchor starts at the trigger and advances to the last surviving
    sent message of each earlier completion.
    """
    existing = set(existing_message_ids)
    insertions: dict[str, list[Completion]] = {}
    for activation in activations:
        anchor = activation.trigger.anchor_message_id
        for completion in activation.completions:
            if completion.is_phantom:
                if anchor is not None:
                    insertions.setdefault(anchor, []).append(completion)
                continue
            for mid in completion.sent_message_ids:
                if mid in existing:
                    anchor = mid
    return insertions
