"""Per (bot, channel) runtime state owned by the agent loop."""

from dataclasses import dataclass, field
from threading import RLock

from loguru import logger

from parlor.agent.tools.cache import ToolCacheEntry


def message_id_key(message_id: str) -> tuple[int, int | str]:
    """Sort key for platform ids: numeric snowflakes by value, otherwise lexically."""
    text = str(message_id)
    if text.isdigit():
        return (0, int(text))
    return (1, text)


@dataclass
class ChannelState:
    """Mutable record for one bot in one channel. Memory only."""
    tool_cache: list[ToolCacheEntry] = field(default_factory=list)
    last_cache_marker: str | None = None
    messages_since_roll: int = 0
    cache_oldest_message_id: str | None = None


class ChannelStateManager:
    """
    Keyed store of ChannelState, one per ``bot:channel``.

    States are created lazily by get_or_initialize(); every other accessor
    raises KeyError for a channel that was never initialized.
    """

    def __init__(self):
        self._states: dict[str, ChannelState] = {}
        self._lock = RLock()

    @staticmethod
    def _key(bot_id: str, channel_id: str) -> str:
        return f"{bot_id}:{channel_id}"

    def _get_state(self, bot_id: str, channel_id: str) -> ChannelState:
        state = self._states.get(self._key(bot_id, channel_id))
        if state is None:
            raise KeyError(f"Channel state not initialized: {bot_id}/{channel_id}")
        return state

    def get_or_initialize(
        self,
        bot_id: str,
        channel_id: str,
        tool_cache: list[ToolCacheEntry] | None = None,
    ) -> ChannelState:
        key = self._key(bot_id, channel_id)
        with self._lock:
            if key not in self._states:
                logger.debug(f"Initializing channel state for {key}")
                self._states[key] = ChannelState(tool_cache=list(tool_cache or []))
            return self._states[key]

    def has(self, bot_id: str, channel_id: str) -> bool:
        return self._key(bot_id, channel_id) in self._states

    def update_tool_cache(self, bot_id: str, channel_id: str, entries: list[ToolCacheEntry]) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).tool_cache.extend(entries)

    def replace_tool_cache(self, bot_id: str, channel_id: str, entries: list[ToolCacheEntry]) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).tool_cache = list(entries)

    def prune_tool_cache(self, bot_id: str, channel_id: str, oldest_message_id: str) -> int:
        """Drop entries triggered before the oldest message still in view. Returns the count removed."""
        with self._lock:
            state = self._get_state(bot_id, channel_id)
            floor = message_id_key(oldest_message_id)
            before = len(state.tool_cache)
            state.tool_cache = [
                e for e in state.tool_cache
                if e.call.message_id is not None and message_id_key(e.call.message_id) >= floor
            ]
            removed = before - len(state.tool_cache)
        if removed:
            logger.debug(f"Pruned {removed} tool cache entries for {bot_id}:{channel_id}")
        return removed

    def update_cache_marker(self, bot_id: str, channel_id: str, marker: str) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).last_cache_marker = marker

    def clear_cache_marker(self, bot_id: str, channel_id: str) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).last_cache_marker = None

    def increment_message_count(self, bot_id: str, channel_id: str) -> int:
        with self._lock:
            state = self._get_state(bot_id, channel_id)
            state.messages_since_roll += 1
            return state.messages_since_roll

    def reset_message_count(self, bot_id: str, channel_id: str) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).messages_since_roll = 0

    def update_cache_oldest_message_id(self, bot_id: str, channel_id: str, message_id: str | None) -> None:
        with self._lock:
            self._get_state(bot_id, channel_id).cache_oldest_message_id = message_id

    def get_cache_oldest_message_id(self, bot_id: str, channel_id: str) -> str | None:
        return self._get_state(bot_id, channel_id).cache_oldest_message_id
