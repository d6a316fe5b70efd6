"""Chat platform connector interface and shared helpers."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from parlor.bus.events import PlatformContext, PlatformMessage
from parlor.bus.queue import EventQueue
from parlor.utils.retry import retry_platform

T = TypeVar("T")

MAX_MESSAGE_LENGTH = 1800


def split_message(content: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """
    Split text into platform-sized chunks on line boundaries.

    Lines longer than ``max_length`` are hard-split.
    """
    if len(content) <= max_length:
        return [content]

    chunks: list[str] = []
    current = ""
    for line in content.split("\n"):
        if len(current) + len(line) + 1 > max_length:
            if current:
                chunks.append(current)
                current = ""
            if len(line) > max_length:
                chunks.extend(line[i:i + max_length] for i in range(0, len(line), max_length))
            else:
                current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def extract_configs(pinned_contents: list[str], bot_name: str | None = None) -> list[str]:
    """
    Pull YAML bodies out of pinned ``.config`` messages.

    The expected layout is a ``.config [target]`` line, a ``---`` line, then
    YAML. When ``bot_name`` is given, configs targeted at another bot are
    skipped; untargeted ones apply to every bot.
    """
    configs: list[str] = []
    for content in pinned_contents:
        if not content.startswith(".config"):
            continue
        lines = content.split("\n")
        if len(lines) <= 2 or lines[1].strip() != "---":
            continue
        target = lines[0][len(".config"):].strip()
        if bot_name and target and target != bot_name:
            continue
        configs.append("\n".join(lines[2:]))
    return configs


def detect_image_type(data: bytes) -> str | None:
    """Sniff the media type from magic bytes."""
    if len(data) < 4:
        return None
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"GIF8":
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class PlatformConnector(ABC):
    """
    Abstract base class for chat platform connectors.

    A connector turns platform activity into Events pushed onto the
    EventQueue and carries out the agent's side effects. Implementations
    should wrap raw API calls in ``_with_retry`` so transient failures are
    retried with backoff.
    """

    name: str = "base"

    def __init__(self, queue: EventQueue, max_backoff_ms: int = 32_000):
        self.queue = queue
        self.max_backoff_ms = max_backoff_ms
        self.bot_user_id: str | None = None
        self.bot_username: str | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin pushing events onto the queue."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def fetch_context(
        self,
        channel_id: str,
        depth: int,
        pinned_configs: list[str] | None = None,
    ) -> PlatformContext:
        """
        Fetch recent history, oldest first, with attachment images.

        Args:
            channel_id: Channel to read.
            depth: Maximum number of messages.
            pinned_configs: Already-fetched pinned configs to reuse.
        """
        pass

    @abstractmethod
    async def fetch_pinned_configs(self, channel_id: str) -> list[str]:
        """Return YAML bodies of pinned ``.config`` messages, oldest first."""
        pass

    @abstractmethod
    async def send_message(self, channel_id: str, content: str, reply_to: str | None = None) -> list[str]:
        """Send text, splitting long content. Returns the ids of all sent chunks."""
        pass

    @abstractmethod
    async def send_message_with_attachment(
        self,
        channel_id: str,
        content: str,
        filename: str,
        data: bytes,
        reply_to: str | None = None,
    ) -> list[str]:
        pass

    @abstractmethod
    async def send_webhook(self, channel_id: str, content: str, display_name: str) -> list[str]:
        """Post as a named webhook user. Used for visible tool output."""
        pass

    @abstractmethod
    async def delete_message(self, channel_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        pass

    @abstractmethod
    async def pin_message(self, channel_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    async def start_typing(self, channel_id: str) -> None:
        pass

    @abstractmethod
    async def stop_typing(self, channel_id: str) -> None:
        pass

    async def get_bot_reply_chain_depth(self, channel_id: str, message: PlatformMessage) -> int:
        """Number of consecutive bot-authored replies leading to ``message``. Zero when unknown."""
        return 0

    async def is_own_message(self, channel_id: str, message_id: str) -> bool:
        """Check the platform for whether a message was authored by this bot."""
        return False

    def get_bot_username(self) -> str | None:
        return self.bot_username

    async def _with_retry(self, fn: Callable[[], Awaitable[T]], action: str = "platform call") -> T:
        try:
            return await retry_platform(fn, max_backoff_ms=self.max_backoff_ms)
        except Exception as e:
            logger.error(f"{self.name}: {action} failed after retries: {e}")
            raise
