"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

DEFAULT_MAX_TOTAL_IMAGE_BYTES = 3 * 1024 * 1024
DEFAULT_MAX_IMAGE_BYTES = int(1.5 * 1024 * 1024)


class MCPServerConfig(BaseModel):
    """A tool-protocol server launched over stdio."""
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class VendorConfig(BaseModel):
    """Credentials for one LLM vendor and the model patterns it serves."""

    model_config = ConfigDict(populate_by_name=True)

    config: dict[str, str] = Field(default_factory=dict)
    provides: list[str] = Field(default_factory=list)  # Regex patterns matched against model names

    @field_validator("config", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value


class BotConfig(BaseModel):
    """Effective configuration for one bot in one channel."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Identity
    name: str = ""
    inner_name: str = ""

    # Model
    mode: Literal["prefill", "chat"] = "prefill"
    continuation_model: str = ""
    temperature: float = 1.0
    max_tokens: int = 4096
    top_p: float = 1.0
    presence_penalty: float | None = None
    frequency_penalty: float | None = None

    # Context
    recency_window_messages: int | None = None
    recency_window_characters: int | None = None
    hard_max_characters: int = 500_000
    rolling_threshold: int = 50
    recent_participant_count: int = 10

    # Images
    include_images: bool = True
    max_images: int = 5
    max_total_image_bytes: int = DEFAULT_MAX_TOTAL_IMAGE_BYTES
    max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES

    # Tools
    tools_enabled: bool = True
    tool_output_visible: bool = False
    max_tool_depth: int = 100
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    tool_plugins: list[str] = Field(default_factory=list)

    stop_sequences: list[str] = Field(default_factory=list)

    # Retries
    llm_retries: int = 3
    platform_backoff_max_ms: int = 32_000

    # Behaviour
    system_prompt: str | None = None
    reply_on_random: int = 0
    reply_on_name: bool = False
    max_bot_reply_chain_depth: int | None = None
    bot_reply_chain_depth_emote: str = "🔁"
    hide_reaction: str = "🫥"
    api_only: bool = False

    # Thinking and caching
    preserve_thinking_context: bool = False
    prefill_thinking: bool = False
    debug_thinking: bool = False
    prompt_caching: bool = True

    # Formatting
    message_delimiter: str = ""
    chat_persona_prompt: bool = False
    chat_persona_prefill: bool = False
    chat_bot_as_assistant: bool = True

    @field_validator("stop_sequences", "tool_plugins", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("temperature")
    @classmethod
    def _check_temperature(cls, value: float) -> float:
        if value < 0 or value > 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("top_p")
    @classmethod
    def _check_top_p(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("top_p must be between 0 and 1")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _check_max_tokens(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_tokens must be positive")
        return value

    @model_validator(mode="after")
    def _fill_identity(self) -> "BotConfig":
        if not self.inner_name:
            self.inner_name = self.name
        if not self.continuation_model:
            raise ValueError("continuation_model is required")
        return self

    @property
    def normal_character_limit(self) -> int:
        return self.recency_window_characters or 100_000


class RuntimeSettings(BaseSettings):
    """Process-level settings read from ``PARLOR_*`` environment variables."""
    config_dir: Path = Path("config")
    cache_dir: Path = Path("cache")
    bot_id: str = ""
    log_level: str = "INFO"

    class Config:
        env_prefix = "PARLOR_"
        env_nested_delimiter = "__"
