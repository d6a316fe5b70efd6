from types import SimpleNamespace

import pytest

from parlor.agent.tools.base import ToolDefinition
from parlor.errors import LLMError
from parlor.providers.base import ImageBlock, ProviderMessage, ProviderRequest, TextBlock, ToolUseBlock
from parlor.providers.completions_provider import TextCompletionProvider
from parlor.providers.litellm_provider import LiteLLMProvider


def _response(content="hello", finish_reason="stop", tool_calls=None, usage=None, **choice_extra):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(message=message, finish_reason=finish_reason, **choice_extra)
    return SimpleNamespace(choices=[choice], usage=usage, model="claude-test")


def _request(**kwargs) -> ProviderRequest:
    data = {
        "model": "claude-test",
        "messages": [ProviderMessage(role="assistant", content=[TextBlock("alice: hi\nClaude:")])],
    }
    data.update(kwargs)
    return ProviderRequest(**data)


@pytest.fixture
def captured(monkeypatch):
    calls: dict = {"responses": []}

    async def fake_acompletion(**kwargs):
        calls["kwargs"] = kwargs
        return calls["responses"].pop(0)

    monkeypatch.setattr("parlor.providers.litellm_provider.acompletion", fake_acompletion)
    return calls


async def test_request_kwargs(captured) -> None:
    captured["responses"].append(_response())
    provider = LiteLLMProvider(api_key="sk-test", api_base="https://proxy.example", vendor="anthropic")
    tool = ToolDefinition(name="search", description="Search", input_schema={"type": "object", "properties": {}})
    request = _request(
        messages=[
            ProviderMessage(role="system", content=[TextBlock("sys")], cache_control={"type": "ephemeral"}),
            ProviderMessage(role="user", content=[TextBlock("alice: hi")]),
        ],
        stop_sequences=["alice:"],
        top_p=0.9,
        tools=[tool],
        mode="chat",
    )

    await provider.complete(request)
    kwargs = captured["kwargs"]

    assert kwargs["model"] == "claude-test"
    assert kwargs["stop"] == ["alice:"]
    assert kwargs["top_p"] == 0.9
    assert kwargs["tools"][0]["function"]["name"] == "search"
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["api_key"] == "sk-test"
    assert kwargs["api_base"] == "https://proxy.example"
    assert kwargs["messages"][0]["content"][-1]["cache_control"] == {"type": "ephemeral"}
    assert "presence_penalty" not in kwargs


async def test_stop_with_stop_sequences_maps_to_stop_sequence(captured) -> None:
    captured["responses"].append(_response())
    completion = await LiteLLMProvider().complete(_request(stop_sequences=["bob:"]))
    assert completion.stop_reason == "stop_sequence"
    assert "stop_sequence" not in completion.raw


async def test_plain_stop_is_end_turn(captured) -> None:
    captured["responses"].append(_response())
    completion = await LiteLLMProvider().complete(_request())
    assert completion.stop_reason == "end_turn"
    assert completion.text == "hello"


async def test_matched_stop_sequence_is_recorded(captured) -> None:
    response = _response(content="<search>{")
    response.choices[0].message.provider_specific_fields = {"stop_sequence": "bob:"}
    captured["responses"].append(response)

    completion = await LiteLLMProvider().complete(_request(stop_sequences=["bob:"]))

    assert completion.stop_reason == "stop_sequence"
    assert completion.raw["stop_sequence"] == "bob:"


async def test_length_maps_to_max_tokens(captured) -> None:
    captured["responses"].append(_response(finish_reason="length"))
    completion = await LiteLLMProvider().complete(_request())
    assert completion.stop_reason == "max_tokens"


async def test_native_tool_calls_are_parsed(captured) -> None:
    tool_call = SimpleNamespace(id="t1", function=SimpleNamespace(name="search", arguments='{"q": "cats"}'))
    captured["responses"].append(_response(content=None, finish_reason="tool_calls", tool_calls=[tool_call]))

    completion = await LiteLLMProvider().complete(_request())

    assert completion.stop_reason == "tool_use"
    assert completion.tool_uses == [ToolUseBlock(id="t1", name="search", input={"q": "cats"})]


async def test_usage_includes_cache_counts(captured) -> None:
    usage = SimpleNamespace(
        prompt_tokens=100,
        completion_tokens=7,
        cache_creation_input_tokens=60,
        prompt_tokens_details=SimpleNamespace(cached_tokens=30),
    )
    captured["responses"].append(_response(usage=usage))

    completion = await LiteLLMProvider().complete(_request())

    assert completion.usage.input_tokens == 100
    assert completion.usage.output_tokens == 7
    assert completion.usage.cache_creation_tokens == 60
    assert completion.usage.cache_read_tokens == 30


async def test_vendor_errors_become_llm_errors(monkeypatch) -> None:
    async def failing(**kwargs):
        raise ConnectionError("refused")

    monkeypatch.setattr("parlor.providers.litellm_provider.acompletion", failing)
    with pytest.raises(LLMError, match="refused"):
        await LiteLLMProvider(vendor="anthropic").complete(_request())


async def test_empty_choices_raise(captured) -> None:
    captured["responses"].append(SimpleNamespace(choices=[], usage=None))
    with pytest.raises(LLMError, match="no choices"):
        await LiteLLMProvider().complete(_request())


def test_wire_messages_encode_images_and_tool_turns() -> None:
    wire = LiteLLMProvider.to_wire_messages([
        ProviderMessage(role="user", content=[TextBlock("look"), ImageBlock(data="aGk=", media_type="image/png")]),
        ProviderMessage(role="assistant", content=[ToolUseBlock(id="t1", name="search", input={"q": "x"})]),
    ])

    assert wire[0]["content"][1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGk="}}
    assert wire[1]["tool_calls"][0]["function"] == {"name": "search", "arguments": '{"q": "x"}'}


async def test_text_completion_provider_sends_flat_prompt(monkeypatch) -> None:
    seen = {}

    async def fake_text_completion(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(text=" there", finish_reason="stop")], usage=None)

    monkeypatch.setattr("parlor.providers.completions_provider.atext_completion", fake_text_completion)
    provider = TextCompletionProvider(api_base="http://localhost:8000/v1")
    request = _request(
        messages=[
            ProviderMessage(role="assistant", content=[TextBlock("alice: a")]),
            ProviderMessage(role="assistant", content=[TextBlock("alice: hi\nClaude:")]),
        ],
    )

    completion = await provider.complete(request)

    assert seen["prompt"] == "alice: a\nalice: hi\nClaude:"
    assert seen["api_base"] == "http://localhost:8000/v1"
    assert completion.text == " there"
    assert completion.stop_reason == "end_turn"


def test_text_completion_provider_requires_base_url() -> None:
    with pytest.raises(LLMError):
        TextCompletionProvider()
