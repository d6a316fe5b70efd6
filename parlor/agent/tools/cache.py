"""Append-only JSONL persistence for executed tool calls."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from parlor.agent.tools.base import ToolCall, ToolResult
from parlor.utils.helpers import ensure_dir

MAX_CACHED_OUTPUT_CHARS = 2000
RECENT_FILE_COUNT = 5


@dataclass
class ToolCacheEntry:
    """A persisted call together with its result."""
    call: ToolCall
    result: ToolResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "call": {
                "id": self.call.id,
                "name": self.call.name,
                "input": self.call.input,
                "message_id": self.call.message_id,
                "original_completion_text": self.call.original_completion_text,
                "bot_message_ids": list(self.call.bot_message_ids),
            },
            "result": {"output": self.result.output, "error": self.result.error},
            "timestamp": self.call.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCacheEntry":
        call_data = dict(data.get("call") or {})
        call_data.setdefault("timestamp", data.get("timestamp"))
        call = ToolCall.from_dict(call_data)
        result_data = dict(data.get("result") or {})
        result = ToolResult(
            call_id=call.id,
            output=result_data.get("output", ""),
            error=result_data.get("error"),
            timestamp=call.timestamp,
        )
        return cls(call=call, result=result)


class ToolCacheStore:
    """
    Tool call log under ``{cache_dir}/{bot}/{channel}/{YYYY-MM-DDTHH}.jsonl``.

    One file per UTC hour. Entries are appended and only rewritten when
    bot message ids are attached or entries are removed.
    """

    def __init__(self, cache_dir: Path | str):
        self.cache_dir = Path(cache_dir)

    def _channel_dir(self, bot_id: str, channel_id: str) -> Path:
        return self.cache_dir / bot_id / channel_id

    def _files(self, bot_id: str, channel_id: str) -> list[Path]:
        directory = self._channel_dir(bot_id, channel_id)
        if not directory.exists():
            return []
        return sorted(directory.glob("*.jsonl"))

    @staticmethod
    def _read_file(path: Path) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt tool cache line in {path}")
        return rows

    @staticmethod
    def _write_file(path: Path, rows: list[dict[str, Any]]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")

    def append(self, bot_id: str, channel_id: str, call: ToolCall, result: ToolResult) -> Path:
        """Persist one executed call. Returns the file written to."""
        directory = ensure_dir(self._channel_dir(bot_id, channel_id))
        hour = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H")
        path = directory / f"{hour}.jsonl"
        entry = ToolCacheEntry(call=call, result=result)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False, default=str) + "\n")
        logger.debug(f"Cached tool call {call.name} ({call.id}) for {bot_id}:{channel_id}")
        return path

    def load(
        self,
        bot_id: str,
        channel_id: str,
        existing_message_ids: Iterable[str] | None = None,
    ) -> list[ToolCacheEntry]:
        """
        Load entries from the most recent files.

        Outputs are truncated for context use. When ``existing_message_ids``
        is given, entries whose bot messages have all been deleted (or that
        never got any) are skipped.
        """
        existing = set(existing_message_ids) if existing_message_ids is not None else None
        entries: list[ToolCacheEntry] = []
        for path in self._files(bot_id, channel_id)[-RECENT_FILE_COUNT:]:
            for row in self._read_file(path):
                try:
                    entry = ToolCacheEntry.from_dict(row)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed tool cache entry in {path}: {e}")
                    continue
                if existing is not None:
                    ids = entry.call.bot_message_ids
                    if not ids or not any(i in existing for i in ids):
                        continue
                output = entry.result.output
                if isinstance(output, str) and len(output) > MAX_CACHED_OUTPUT_CHARS:
                    entry.result.output = output[:MAX_CACHED_OUTPUT_CHARS] + "\n...[truncated]"
                entries.append(entry)
        return entries

    def update_bot_message_ids(
        self,
        bot_id: str,
        channel_id: str,
        call_ids: Iterable[str],
        bot_message_ids: list[str],
    ) -> int:
        """Attach sent message ids to calls that have none yet. Returns the count updated."""
        wanted = set(call_ids)
        if not wanted or not bot_message_ids:
            return 0
        updated = 0
        for path in self._files(bot_id, channel_id):
            rows = self._read_file(path)
            changed = False
            for row in rows:
                call = row.get("call") or {}
                if call.get("id") in wanted and not call.get("bot_message_ids"):
                    call["bot_message_ids"] = list(bot_message_ids)
                    changed = True
                    updated += 1
            if changed:
                self._write_file(path, rows)
        return updated

    def remove_entries_by_bot_message_ids(
        self,
        bot_id: str,
        channel_id: str,
        message_ids: Iterable[str],
    ) -> int:
        """Drop entries linked to deleted bot messages. Empty files are removed."""
        doomed = set(message_ids)
        if not doomed:
            return 0
        removed = 0
        for path in self._files(bot_id, channel_id):
            rows = self._read_file(path)
            kept = [
                row for row in rows
                if not any(i in doomed for i in (row.get("call") or {}).get("bot_message_ids") or [])
            ]
            if len(kept) == len(rows):
                continue
            removed += len(rows) - len(kept)
            if kept:
                self._write_file(path, kept)
            else:
                path.unlink(missing_ok=True)
        if removed:
            logger.info(f"Removed {removed} tool cache entries for deleted messages in {channel_id}")
        return removed
