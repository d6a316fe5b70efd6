"""Event and platform message types."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

EventKind = Literal["message", "reaction", "edit", "delete", "timer", "self_activation", "internal"]

PLATFORM_EVENT_KINDS = frozenset({"message", "reaction", "edit", "delete"})


@dataclass
class Author:
    """Author of a platform message."""
    id: str
    username: str
    display_name: str = ""
    bot: bool = False

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.username


@dataclass
class Attachment:
    """File attached to a platform message."""
    id: str
    url: str
    filename: str = ""
    content_type: str | None = None
    size: int = 0


@dataclass
class Reaction:
    """Emoji reaction with its count."""
    emoji: str
    count: int = 1


@dataclass
class PlatformMessage:
    """A message as seen on the chat platform."""
    id: str
    channel_id: str
    author: Author
    content: str = ""
    guild_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    attachments: list[Attachment] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)  # Mentioned user ids
    reply_to: str | None = None
    system: bool = False
    # Source ids when consecutive bot messages were merged
    merged_ids: list[str] = field(default_factory=list)

    @property
    def all_ids(self) -> list[str]:
        return self.merged_ids or [self.id]

    def has_reaction(self, emoji: str) -> bool:
        return any(r.emoji == emoji for r in self.reactions)


@dataclass(frozen=True)
class Event:
    """Something that happened on a channel. Immutable once queued."""
    kind: EventKind
    channel_id: str
    guild_id: str | None = None
    payload: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def category(self) -> str:
        """Batching category: platform events and internal events never mix."""
        return "platform" if self.kind in PLATFORM_EVENT_KINDS else "internal"

    @property
    def message(self) -> PlatformMessage | None:
        if self.kind in ("message", "edit", "delete") and isinstance(self.payload, PlatformMessage):
            return self.payload
        return None


@dataclass
class CachedImage:
    """Image bytes fetched for a message attachment."""
    url: str
    data: bytes
    media_type: str
    hash: str = ""


@dataclass
class PlatformContext:
    """History fetched from the platform for one activation."""
    messages: list[PlatformMessage]
    images: list[CachedImage] = field(default_factory=list)
    pinned_configs: list[str] = field(default_factory=list)
    guild_id: str | None = None
