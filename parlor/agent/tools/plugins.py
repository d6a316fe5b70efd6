"""In-process tool plugins."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from parlor.agent.tools.base import Tool, ToolContext
from parlor.agent.tools.registry import ToolRegistry
from parlor.utils.helpers import ensure_dir

PluginHandler = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]

SENSITIVE_KEYS = ("api_key", "token", "secret", "password")
FORBIDDEN_SET_KEYS = SENSITIVE_KEYS + ("mcp_servers", "tool_plugins")


class PluginTool(Tool):
    """A tool whose behaviour is a plain async handler taking (params, context)."""

    def __init__(self, name: str, description: str, parameters: dict[str, Any], handler: PluginHandler):
        super().__init__()
        self._name = name
        self._description = description
        self._parameters = parameters
        self._handler = handler

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(self, **kwargs: Any) -> Any:
        if self.context is None:
            raise RuntimeError(f"Plugin tool {self.name} has no activation context")
        result = await self._handler(kwargs, self.context)
        return result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(s in lowered for s in SENSITIVE_KEYS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: (v[:4] + "...[redacted]" if _is_sensitive(str(k)) and isinstance(v, str) else _redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


async def _list_config(params: dict[str, Any], context: ToolContext) -> str:
    if context.config is None:
        return "No configuration loaded"
    data = context.config.model_dump(mode="json")
    needle = str(params.get("filter") or "").lower()
    lines = []
    for key, value in data.items():
        if needle and needle not in key.lower():
            continue
        if _is_sensitive(key) and isinstance(value, str):
            shown = value[:4] + "...[redacted]"
        else:
            shown = json.dumps(_redact(value), ensure_ascii=False)
        lines.append(f"{key}: {shown}")
    return "\n".join(lines)


async def _set_config(params: dict[str, Any], context: ToolContext) -> str:
    key = str(params.get("key") or "")
    value = params.get("value")
    if not key or value is None:
        return "Error: key and value are required"
    if any(f in key.lower() for f in FORBIDDEN_SET_KEYS):
        return f"Error: Cannot change sensitive key: {key}"
    if context.connector is None:
        return "Error: no platform connection available"

    text = str(value)
    if "\n" in text:
        indented = "\n".join(f"  {line}" for line in text.split("\n"))
        text = f"|\n{indented}"
    message = f".config {context.bot_id}\n---\n{key}: {text}"
    message_ids = await context.connector.send_message(context.channel_id, message)
    if message_ids:
        await context.connector.pin_message(context.channel_id, message_ids[0])
    return f"Config change pinned. {key} will update on next message."


def config_plugin() -> list[Tool]:
    return [
        PluginTool(
            name="list_config",
            description="List current bot configuration values",
            parameters={
                "type": "object",
                "properties": {
                    "filter": {
                        "type": "string",
                        "description": "Optional filter - only show keys containing this string",
                    },
                },
            },
            handler=_list_config,
        ),
        PluginTool(
            name="set_config",
            description="Change bot configuration by pinning a YAML .config message.",
            parameters={
                "type": "object",
                "properties": {
                    "key": {"type": "string", "description": "Config key to set (e.g. system_prompt, temperature)"},
                    "value": {"type": "string", "description": "Value to set. For multiline, use actual newlines."},
                },
                "required": ["key", "value"],
            },
            handler=_set_config,
        ),
    ]


# Notes


def _notes_path(context: ToolContext) -> Path:
    if context.cache_dir is None:
        raise RuntimeError("Notes need a cache directory")
    return Path(context.cache_dir) / "plugins" / "notes" / context.bot_id / f"{context.channel_id}.json"


def load_notes(context: ToolContext) -> list[dict[str, Any]]:
    """Notes saved in the context's channel, oldest first."""
    path = _notes_path(context)
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read notes {path}: {e}")
        return []
    return [n for n in data.get("notes", []) if isinstance(n, dict) and n.get("id")]


def _save_notes(context: ToolContext, notes: list[dict[str, Any]]) -> None:
    path = _notes_path(context)
    ensure_dir(path.parent)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"notes": notes}, f, ensure_ascii=False, indent=2)


async def _save_note(params: dict[str, Any], context: ToolContext) -> str:
    content = str(params.get("content") or "").strip()
    if not content:
        return "Error: content is required"
    notes = load_notes(context)
    note = {
        "id": f"note_{uuid.uuid4().hex[:8]}",
        "content": content,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    notes.append(note)
    _save_notes(context, notes)
    logger.info(f"Saved note {note['id']} in {context.bot_id}:{context.channel_id}")
    preview = content if len(content) <= 50 else content[:50] + "..."
    return f'Saved note {note["id"]}: "{preview}"'


async def _list_notes(params: dict[str, Any], context: ToolContext) -> str:
    notes = load_notes(context)
    if not notes:
        return "No notes saved. Use save_note to add one."
    return "\n".join(f"{i}. [{n['id']}] {n.get('content', '')}" for i, n in enumerate(notes, 1))


async def _delete_note(params: dict[str, Any], context: ToolContext) -> str:
    note_id = str(params.get("id") or "")
    notes = load_notes(context)
    kept = [n for n in notes if n["id"] != note_id]
    if len(kept) == len(notes):
        return f"Error: note {note_id} not found"
    _save_notes(context, kept)
    logger.info(f"Deleted note {note_id} in {context.bot_id}:{context.channel_id}")
    return f"Deleted note {note_id}"


def notes_plugin() -> list[Tool]:
    return [
        PluginTool(
            name="save_note",
            description="Save a note for this channel. Notes persist across conversations.",
            parameters={
                "type": "object",
                "properties": {"content": {"type": "string", "description": "The note content to save"}},
                "required": ["content"],
            },
            handler=_save_note,
        ),
        PluginTool(
            name="list_notes",
            description="List all saved notes for this channel",
            parameters={"type": "object", "properties": {}},
            handler=_list_notes,
        ),
        PluginTool(
            name="delete_note",
            description="Delete a note by ID",
            parameters={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "The ID of the note to delete"}},
                "required": ["id"],
            },
            handler=_delete_note,
        ),
    ]


AVAILABLE_PLUGINS: dict[str, Callable[[], list[Tool]]] = {
    "config": config_plugin,
    "notes": notes_plugin,
}


class PluginLoader:
    """Registers plugin tools by name, each plugin at most once."""

    def __init__(self, available: dict[str, Callable[[], list[Tool]]] | None = None):
        self.available = dict(AVAILABLE_PLUGINS if available is None else available)
        self.loaded: list[str] = []

    def load(self, names: list[str], registry: ToolRegistry) -> list[str]:
        """Load plugins not loaded yet. Unknown names are logged and skipped."""
        newly: list[str] = []
        for name in names:
            if name in self.loaded:
                continue
            factory = self.available.get(name)
            if factory is None:
                logger.warning(f"Plugin not found: {name}")
                continue
            tools = factory()
            for tool in tools:
                registry.register(tool, source=f"plugin:{name}")
            self.loaded.append(name)
            newly.append(name)
            logger.info(f"Loaded plugin {name}: {', '.join(t.name for t in tools)}")
        return newly
