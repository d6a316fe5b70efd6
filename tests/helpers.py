from datetime import datetime, timedelta

from parlor.bus.events import Author, PlatformContext, PlatformMessage
from parlor.bus.queue import EventQueue
from parlor.config.schema import BotConfig
from parlor.platform.base import PlatformConnector
from parlor.providers.base import LLMCompletion, LLMProvider, TextBlock

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0)


def make_config(**overrides) -> BotConfig:
    data = {"name": "Claude", "continuation_model": "claude-test", "prompt_caching": True}
    data.update(overrides)
    return BotConfig.model_validate(data)


def make_message(
    mid: str,
    author: str = "alice",
    content: str = "hello",
    *,
    author_id: str | None = None,
    bot: bool = False,
    channel_id: str = "c1",
    **kwargs,
) -> PlatformMessage:
    return PlatformMessage(
        id=mid,
        channel_id=channel_id,
        author=Author(id=author_id or f"u-{author}", username=author, bot=bot),
        content=content,
        timestamp=BASE_TIME + timedelta(seconds=int(mid) if mid.isdigit() else 0),
        **kwargs,
    )


def text_completion(text: str, stop_reason: str = "end_turn", **raw) -> LLMCompletion:
    return LLMCompletion(content=[TextBlock(text)] if text else [], stop_reason=stop_reason, raw=dict(raw))


class ScriptedProvider(LLMProvider):
    """Returns queued completions and records every request it receives."""

    def __init__(self, responses, vendor: str = "scripted"):
        super().__init__(api_key=None, api_base=None)
        self.responses = list(responses)
        self.requests = []
        self.vendor = vendor

    @property
    def name(self) -> str:
        return self.vendor

    async def complete(self, request):
        self.requests.append(request)
        if not self.responses:
            return text_completion("")
        value = self.responses.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class FakeConnector(PlatformConnector):
    """In-memory connector that records side effects."""

    name = "fake"

    def __init__(self, messages=None, pinned=None, bot_user_id: str = "bot-1", bot_username: str = "claude"):
        super().__init__(EventQueue())
        self.bot_user_id = bot_user_id
        self.bot_username = bot_username
        self.messages = list(messages or [])
        self.pinned = list(pinned or [])
        self.sent: list[tuple[str, str, str | None]] = []
        self.attachments: list[tuple[str, str, str, bytes]] = []
        self.webhooks: list[tuple[str, str, str]] = []
        self.deleted: list[str] = []
        self.reactions: list[tuple[str, str]] = []
        self.pins: list[str] = []
        self.typing: list[str] = []
        self.chain_depth = 0
        self.fail_delete = False
        self._next_id = 9000

    def _ids(self, count: int = 1) -> list[str]:
        ids = []
        for _ in range(count):
            self._next_id += 1
            ids.append(str(self._next_id))
        return ids

    async def start(self):
        pass

    async def close(self):
        pass

    async def fetch_context(self, channel_id, depth, pinned_configs=None):
        return PlatformContext(
            messages=list(self.messages[-depth:]),
            pinned_configs=list(pinned_configs or self.pinned),
        )

    async def fetch_pinned_configs(self, channel_id):
        return list(self.pinned)

    async def send_message(self, channel_id, content, reply_to=None):
        self.sent.append((channel_id, content, reply_to))
        return self._ids()

    async def send_message_with_attachment(self, channel_id, content, filename, data, reply_to=None):
        self.attachments.append((channel_id, content, filename, data))
        return self._ids()

    async def send_webhook(self, channel_id, content, display_name):
        self.webhooks.append((channel_id, content, display_name))
        return self._ids()

    async def delete_message(self, channel_id, message_id):
        if self.fail_delete:
            raise RuntimeError("missing permissions")
        self.deleted.append(message_id)

    async def add_reaction(self, channel_id, message_id, emoji):
        self.reactions.append((message_id, emoji))

    async def pin_message(self, channel_id, message_id):
        self.pins.append(message_id)

    async def start_typing(self, channel_id):
        self.typing.append("start")

    async def stop_typing(self, channel_id):
        self.typing.append("stop")

    async def get_bot_reply_chain_depth(self, channel_id, message):
        return self.chain_depth
