import pytest

from parlor.config.loader import ConfigSystem, camel_to_snake, convert_keys, merge_layers
from parlor.config.schema import RuntimeSettings
from parlor.errors import ConfigError


def _write(path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture
def config_dir(tmp_path):
    _write(tmp_path / "shared.yaml", (
        "temperature: 0.7\n"
        "maxTokens: 1000\n"
        "vendors:\n"
        "  anthropic:\n"
        "    config:\n"
        "      anthropic_api_key: sk-1\n"
        "    provides:\n"
        "      - ^claude\n"
    ))
    _write(tmp_path / "guilds" / "g1.yaml", "temperature: 0.9\nstopSequences: '###'\n")
    _write(tmp_path / "bots" / "Claude.yaml", "continuationModel: claude-test\nsystemPrompt: You are Claude.\n")
    _write(tmp_path / "bots" / "Claude-g1.yaml", "maxTokens: 2000\n")
    return tmp_path


def test_layers_merge_in_precedence_order(config_dir) -> None:
    config = ConfigSystem(config_dir).load_config("Claude", "g1", ["temperature: 0.2\n", "mode: chat\n"])

    assert config.name == "Claude"
    assert config.inner_name == "Claude"
    assert config.temperature == 0.2
    assert config.max_tokens == 2000
    assert config.mode == "chat"
    assert config.stop_sequences == ["###"]
    assert config.system_prompt == "You are Claude."


def test_guild_layers_skipped_without_guild(config_dir) -> None:
    config = ConfigSystem(config_dir).load_config("Claude")
    assert config.temperature == 0.7
    assert config.max_tokens == 1000


def test_malformed_pinned_yaml_is_ignored(config_dir) -> None:
    config = ConfigSystem(config_dir).load_config("Claude", None, ["temperature: [unclosed", "- a list"])
    assert config.temperature == 0.7


def test_invalid_values_raise_config_error(config_dir) -> None:
    with pytest.raises(ConfigError, match="temperature"):
        ConfigSystem(config_dir).load_config("Claude", None, ["temperature: 5\n"])


def test_missing_model_raises_config_error(tmp_path) -> None:
    with pytest.raises(ConfigError, match="continuation_model"):
        ConfigSystem(tmp_path).load_config("Nobody")


def test_vendors_keep_credential_keys(config_dir) -> None:
    vendors = ConfigSystem(config_dir).load_vendors()
    assert vendors["anthropic"].config == {"anthropic_api_key": "sk-1"}
    assert vendors["anthropic"].provides == ["^claude"]


def test_merge_layers_is_shallow_and_ignores_none() -> None:
    merged = merge_layers([
        {"a": 1, "nested": {"x": 1, "y": 1}, "items": [1, 2]},
        {"a": None, "nested": {"y": 2}, "items": [3]},
    ])
    assert merged == {"a": 1, "nested": {"x": 1, "y": 2}, "items": [3]}


def test_convert_keys_preserves_env_maps() -> None:
    data = {"mcpServers": [{"name": "fs", "command": "npx", "env": {"API_TOKEN": "t", "someKey": "v"}}]}
    converted = convert_keys(data)
    assert converted["mcp_servers"][0]["env"] == {"API_TOKEN": "t", "someKey": "v"}
    assert camel_to_snake("recencyWindowMessages") == "recency_window_messages"
    assert camel_to_snake("already_snake") == "already_snake"


def test_runtime_settings_from_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("PARLOR_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("PARLOR_BOT_ID", "Claude")
    settings = RuntimeSettings()
    assert settings.config_dir == tmp_path
    assert settings.bot_id == "Claude"
