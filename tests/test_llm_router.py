import pytest

from helpers import ScriptedProvider, text_completion
from parlor.agent.tools.base import ToolDefinition
from parlor.config.schema import VendorConfig
from parlor.errors import LLMError
from parlor.providers.base import ImageBlock, LLMRequest, ModelConfig, ParticipantMessage, TextBlock
from parlor.providers.completions_provider import TextCompletionProvider
from parlor.providers.litellm_provider import LiteLLMProvider
from parlor.providers.router import LLMRouter, matches_any

SEARCH = ToolDefinition(
    name="search",
    description="Search the web",
    input_schema={"type": "object", "properties": {"q": {"type": "string"}, "n": {"type": "integer"}}, "required": ["q"]},
)


def _turn(participant: str, text: str = "", **kwargs) -> ParticipantMessage:
    return ParticipantMessage(participant=participant, content=[TextBlock(text)], **kwargs)


def _request(messages, mode="prefill", system_prompt=None, tools=None, stop_sequences=None, **cfg) -> LLMRequest:
    return LLMRequest(
        messages=messages,
        config=ModelConfig(model="claude-test", mode=mode, bot_inner_name="Claude", **cfg),
        system_prompt=system_prompt,
        tools=tools,
        stop_sequences=stop_sequences or [],
    )


def _texts(provider_request):
    return [(m.role, "".join(b.text for b in m.content if isinstance(b, TextBlock))) for m in provider_request.messages]


def _router(provider, provides=("claude",)) -> LLMRouter:
    router = LLMRouter(retry_delay_ms=0)
    router.set_vendor_configs({"v": VendorConfig(provides=list(provides))})
    router.register_provider(provider, name="v")
    return router


def test_prefill_renders_one_transcript_ending_with_bot_prefix() -> None:
    request = _request([_turn("alice", "hi"), _turn("bob", "yo"), _turn("Claude")], system_prompt="Be nice.")

    out = LLMRouter().transform_to_prefill(request)

    assert _texts(out) == [("system", "Be nice."), ("assistant", "alice: hi\nbob: yo\nClaude:")]
    assert out.messages[0].cache_control == {"type": "ephemeral"}
    assert out.tools is None


def test_prefill_flushes_cached_block_at_marker() -> None:
    request = _request([
        _turn("alice", "a"),
        _turn("bob", "b", cache_control={"type": "ephemeral"}),
        _turn("alice", "c"),
        _turn("Claude"),
    ])

    out = LLMRouter().transform_to_prefill(request)

    assert _texts(out) == [("assistant", "alice: a"), ("assistant", "bob: b\nalice: c\nClaude:")]
    assert out.messages[0].cache_control == {"type": "ephemeral"}
    assert out.messages[1].cache_control is None


def test_prefill_thinking_opens_thinking_tag() -> None:
    out = LLMRouter().transform_to_prefill(_request([_turn("alice", "hi"), _turn("Claude")], prefill_thinking=True))
    assert _texts(out)[-1] == ("assistant", "alice: hi\nClaude: <thinking>")


def test_prefill_images_become_user_turns() -> None:
    image = ImageBlock(data="aGk=", media_type="image/png")
    request = _request([
        _turn("bob", "before"),
        ParticipantMessage(participant="alice", content=[TextBlock("look"), image]),
        _turn("Claude"),
    ])

    out = LLMRouter().transform_to_prefill(request)

    assert [m.role for m in out.messages] == ["assistant", "user", "assistant"]
    assert out.messages[1].content[0].text == "alice: look"
    assert out.messages[1].content[1] is image


def test_prefill_keeps_partial_bot_text_for_continuation() -> None:
    out = LLMRouter().transform_to_prefill(_request([_turn("alice", "hi"), _turn("Claude", "partial <search>")]))
    assert _texts(out) == [("assistant", "alice: hi\nClaude: partial <search>")]


def test_prefill_uses_message_delimiter() -> None:
    out = LLMRouter().transform_to_prefill(
        _request([_turn("alice", "hi"), _turn("Claude")], message_delimiter="</s>")
    )
    assert _texts(out) == [("assistant", "alice: hi</s>Claude:")]


def test_prefill_inserts_tool_block_near_the_end() -> None:
    messages = [_turn("alice" if i % 2 else "bob", f"m{i}") for i in range(12)] + [_turn("Claude")]

    out = LLMRouter().transform_to_prefill(_request(messages, tools=[SEARCH]))

    roles = [m.role for m in out.messages]
    assert roles == ["assistant", "user", "assistant"]
    tools_text = out.messages[1].content[0].text
    assert '<search>{"q": "..."}</search> - Search the web' in tools_text
    assert out.messages[2].content[0].text.count("\n") == 9
    assert out.messages[2].content[0].text.endswith("Claude:")
    assert out.tools is None


def test_chat_groups_speakers_into_roles() -> None:
    request = _request(
        [_turn("alice", "hi"), _turn("bob", "yo"), _turn("Claude", "sure"), _turn("alice", "thanks"), _turn("Claude")],
        mode="chat",
        system_prompt="sys",
        tools=[SEARCH],
    )

    out = LLMRouter().transform_to_chat(request)

    assert _texts(out) == [
        ("system", "sys"),
        ("user", "alice: hi\nbob: yo"),
        ("assistant", "sure"),
        ("user", "alice: thanks"),
    ]
    assert out.tools == [SEARCH]


def test_chat_persona_prompt_and_prefill() -> None:
    request = _request(
        [_turn("alice", "hi"), _turn("Claude")],
        mode="chat",
        chat_persona_prompt=True,
        chat_persona_prefill=True,
    )

    out = LLMRouter().transform_to_chat(request)

    assert out.messages[0].role == "system"
    assert "Claude" in out.messages[0].content[0].text
    assert _texts(out)[-1] == ("user", "alice: hi:\nClaude:")


def test_matches_any_tolerates_bad_patterns() -> None:
    assert matches_any("claude-3-opus", ["[unclosed", "^claude"])
    assert not matches_any("gpt-4", ["^claude"])


async def test_unknown_model_raises() -> None:
    router = _router(ScriptedProvider([]), provides=["^gpt"])
    with pytest.raises(LLMError, match="No provider found for model: claude-test"):
        await router.complete(_request([_turn("Claude")]))


async def test_unsupported_mode_raises() -> None:
    router = _router(TextCompletionProvider(api_base="http://localhost:8000/v1"))
    with pytest.raises(LLMError, match="does not support chat mode"):
        await router.complete(_request([_turn("alice", "hi")], mode="chat"))


async def test_complete_retries_then_succeeds() -> None:
    provider = ScriptedProvider([RuntimeError("overloaded"), text_completion("hello")])

    completion = await _router(provider).complete(_request([_turn("alice", "hi"), _turn("Claude")]), max_attempts=2)

    assert completion.text == "hello"
    assert len(provider.requests) == 2


async def test_exhausted_retries_raise_llm_error() -> None:
    provider = ScriptedProvider([RuntimeError("a"), RuntimeError("b")])
    with pytest.raises(LLMError, match="b"):
        await _router(provider).complete(_request([_turn("Claude")]), max_attempts=2)


async def test_stop_sequences_clipped_to_vendor_limit() -> None:
    class LimitedProvider(ScriptedProvider):
        @property
        def max_stop_sequences(self):
            return 2

    provider = LimitedProvider([text_completion("ok")])
    await _router(provider).complete(_request([_turn("Claude")], stop_sequences=["a:", "b:", "c:"]))

    assert provider.requests[0].stop_sequences == ["a:", "b:"]


def test_from_vendors_builds_providers() -> None:
    router = LLMRouter.from_vendors({
        "anthropic": VendorConfig(config={"anthropic_api_key": "sk-1"}, provides=["^claude"]),
        "base": VendorConfig(config={"completions_base_url": "http://h/v1"}, provides=["^llama"]),
        "broken": VendorConfig(config={"completions_api_key": "k"}, provides=["^x"]),
    })

    assert isinstance(router.providers["anthropic"], LiteLLMProvider)
    assert router.providers["anthropic"].api_key == "sk-1"
    assert isinstance(router.providers["base"], TextCompletionProvider)
    assert "broken" not in router.providers
    assert router.select_provider("llama-3-70b") is router.providers["base"]
