"""Configuration module for parlor."""

from parlor.config.loader import ConfigSystem
from parlor.config.schema import BotConfig, MCPServerConfig, RuntimeSettings, VendorConfig

__all__ = ["ConfigSystem", "BotConfig", "MCPServerConfig", "RuntimeSettings", "VendorConfig"]
