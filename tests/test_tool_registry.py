from types import SimpleNamespace

import pytest

from helpers import FakeConnector, make_config
from parlor.agent.tools.base import Tool, ToolCall, ToolContext
from parlor.agent.tools.plugins import PluginLoader, config_plugin
from parlor.agent.tools.registry import ToolRegistry
from parlor.errors import ToolError


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo text back"

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {"text": {"type": "string", "minLength": 1}, "times": {"type": "integer", "minimum": 1}},
            "required": ["text"],
        }

    async def execute(self, text: str, times: int = 1) -> str:
        if text == "boom":
            raise RuntimeError("exploded")
        return text * times


class ScalarTool(EchoTool):
    @property
    def name(self) -> str:
        return "scalar"

    @property
    def parameters(self) -> dict:
        return {"type": "string"}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EchoTool())
    return registry


async def test_execute_returns_output() -> None:
    result = await _registry().execute_tool(ToolCall(id="1", name="echo", input={"text": "ab", "times": 2}))
    assert result.output == "abab"
    assert result.error is None
    assert result.call_id == "1"


async def test_unknown_tool_is_an_error_result() -> None:
    result = await _registry().execute_tool(ToolCall(id="1", name="nope", input={}))
    assert result.error == "Tool 'nope' not found"


async def test_validation_errors_are_reported() -> None:
    result = await _registry().execute_tool(ToolCall(id="1", name="echo", input={"times": 0}))
    assert "missing required text" in result.error
    assert "times must be >= 1" in result.error


async def test_tool_exception_becomes_error_result() -> None:
    result = await _registry().execute_tool(ToolCall(id="1", name="echo", input={"text": "boom"}))
    assert result.error == "exploded"
    assert result.text == "Error: exploded"


async def test_empty_registry_raises() -> None:
    with pytest.raises(ToolError, match="No tools initialized"):
        await ToolRegistry().execute_tool(ToolCall(id="1", name="echo", input={}))


def test_definitions_and_sources() -> None:
    registry = _registry()
    [definition] = registry.get_definitions()
    assert definition.name == "echo"
    assert definition.to_openai()["function"]["parameters"]["required"] == ["text"]
    assert registry.source_of("echo") == "local"
    assert "echo" in registry and len(registry) == 1


async def test_bad_schema_becomes_error_result() -> None:
    registry = _registry()
    registry.register(ScalarTool())

    result = await registry.execute_tool(ToolCall(id="1", name="scalar", input={"text": "hi"}))

    assert result.output == ""
    assert "Schema must be object type" in result.error


def test_plugin_loader_loads_once_and_skips_unknown() -> None:
    registry = ToolRegistry()
    loader = PluginLoader()

    assert loader.load(["config", "missing"], registry) == ["config"]
    assert loader.load(["config"], registry) == []
    assert set(registry.tool_names) == {"list_config", "set_config"}
    assert loader.load(["notes"], registry) == ["notes"]
    assert registry.source_of("save_note") == "plugin:notes"
    assert registry.source_of("set_config") == "plugin:config"


async def test_set_config_pins_a_config_message() -> None:
    connector = FakeConnector()
    registry = ToolRegistry()
    PluginLoader().load(["config"], registry)
    registry.set_context(ToolContext(bot_id="Claude", channel_id="c1", connector=connector))

    result = await registry.execute_tool(
        ToolCall(id="1", name="set_config", input={"key": "system_prompt", "value": "line one\nline two"})
    )

    assert result.output.startswith("Config change pinned.")
    channel, content, _ = connector.sent[0]
    assert channel == "c1"
    assert content == ".config Claude\n---\nsystem_prompt: |\n  line one\n  line two"
    assert connector.pins == ["9001"]


async def test_set_config_refuses_sensitive_keys() -> None:
    connector = FakeConnector()
    [_, set_config] = config_plugin()
    set_config.set_context(ToolContext(bot_id="Claude", channel_id="c1", connector=connector))

    result = await set_config.execute(key="api_key", value="x")

    assert result.startswith("Error: Cannot change sensitive key")
    assert connector.sent == []


async def test_list_config_filters_keys() -> None:
    [list_config, _] = config_plugin()
    list_config.set_context(SimpleNamespace(config=make_config(temperature=0.5)))

    text = await list_config.execute(filter="temp")

    assert text == "temperature: 0.5"


async def test_plugin_without_context_fails_as_tool_error_result() -> None:
    registry = ToolRegistry()
    PluginLoader().load(["config"], registry)
    result = await registry.execute_tool(ToolCall(id="1", name="list_config", input={}))
    assert "no activation context" in result.error
