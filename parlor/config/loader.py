"""Layered YAML configuration loading."""

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from parlor.config.schema import BotConfig, VendorConfig
from parlor.errors import ConfigError


class ConfigSystem:
    """
    Loads and merges bot configuration from a config directory.

    Layers, lowest precedence first:
        shared.yaml
        guilds/{guild}.yaml
        bots/{bot}.yaml
        bots/{bot}-{guild}.yaml
        pinned channel configs, in pin order
    """

    def __init__(self, config_dir: Path | str):
        self.config_dir = Path(config_dir)

    def load_config(
        self,
        bot_name: str,
        guild_id: str | None = None,
        channel_configs: list[str] | None = None,
    ) -> BotConfig:
        """
        Load the effective config for a bot in a channel.

        Raises:
            ConfigError: If the merged config fails validation.
        """
        layers: list[dict[str, Any]] = [self._load_yaml(self.config_dir / "shared.yaml")]
        if guild_id:
            layers.append(self._load_yaml(self.config_dir / "guilds" / f"{guild_id}.yaml"))
        layers.append(self._load_yaml(self.config_dir / "bots" / f"{bot_name}.yaml"))
        if guild_id:
            layers.append(self._load_yaml(self.config_dir / "bots" / f"{bot_name}-{guild_id}.yaml"))
        layers.extend(self._parse_yaml_text(text) for text in channel_configs or [])

        merged = merge_layers([convert_keys(layer) for layer in layers])
        merged.pop("vendors", None)
        merged.setdefault("name", bot_name)
        try:
            config = BotConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid config for bot {bot_name}: {_summarize(e)}",
                details={"bot": bot_name, "guild": guild_id, "errors": e.errors(include_url=False)},
            ) from e
        logger.debug(f"Loaded config for {bot_name} (guild={guild_id}, {len(channel_configs or [])} pinned)")
        return config

    def load_vendors(self) -> dict[str, VendorConfig]:
        """Read the ``vendors`` section of shared.yaml."""
        data = self._load_yaml(self.config_dir / "shared.yaml")
        vendors = data.get("vendors") or {}
        if not isinstance(vendors, dict):
            raise ConfigError("vendors must be a mapping of vendor name to config")
        out: dict[str, VendorConfig] = {}
        for name, raw in vendors.items():
            try:
                out[str(name)] = VendorConfig.model_validate(raw or {})
            except ValidationError as e:
                raise ConfigError(f"Invalid vendor {name}: {_summarize(e)}") from e
        return out

    @staticmethod
    def _load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config file {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _parse_yaml_text(text: str) -> dict[str, Any]:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse channel config: {e}")
            return {}
        return data if isinstance(data, dict) else {}


def merge_layers(layers: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Merge config layers in order.

    Mappings merge one level deep; scalars and lists from later layers
    replace earlier ones. None values never override.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is None:
                continue
            if isinstance(value, dict):
                existing = merged.get(key)
                merged[key] = {**(existing if isinstance(existing, dict) else {}), **value}
            else:
                merged[key] = value
    return merged


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors(include_url=False):
        loc = ".".join(str(p) for p in item.get("loc", ())) or "config"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


PRESERVED_KEYS = frozenset({"env", "config"})


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic. Env maps and vendor credentials keep their keys."""
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            key = camel_to_snake(k)
            out[key] = v if key in PRESERVED_KEYS else convert_keys(v)
        return out
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    if not isinstance(name, str):
        return name
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0 and name[i - 1] != "_":
            result.append("_")
        result.append(char.lower())
    return "".join(result)
