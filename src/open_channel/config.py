"""Channel configuration for open-channel.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./open_channel.yaml``
  3. ``~/.config/open-channel/config.yaml``
  4. Built-in defaults (no channels)

Each entry under ``channels`` is validated into one member of the
``ChannelConfig`` union, selected by its ``type`` key.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Protocol, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

_logger = logging.getLogger(__name__)

ToolMode = Literal["function_call", "xml", "json"]

DEFAULT_TOOL_MODE: ToolMode = "function_call"


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class CustomHeader(_Frozen):
    key: str
    value: str = ""
    enabled: bool = True


class CustomBodyItem(_Frozen):
    key: str  # dotted path, e.g. "generationConfig.seed"
    value: Any = None
    enabled: bool = True


class CustomBodyConfig(_Frozen):
    """Extra request-body fields merged into every request.

    ``simple`` mode merges the enabled ``items``; ``advanced`` mode merges the
    JSON object in ``json``.
    """

    mode: Literal["simple", "advanced"] = "simple"
    items: list[CustomBodyItem] = Field(default_factory=list)
    json_text: str = Field(default="", alias="json")


# ---------------------------------------------------------------------------
# Per-provider options
# ---------------------------------------------------------------------------

class GeminiOptions(_Frozen):
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stream: Optional[bool] = None
    include_thoughts: bool = False
    thinking_budget: Optional[int] = None


class OpenAIOptions(_Frozen):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: Optional[bool] = None
    reasoning_effort: Optional[str] = None


class AnthropicOptions(_Frozen):
    temperature: Optional[float] = None
    max_tokens: int = 4096
    top_p: Optional[float] = None
    stream: Optional[bool] = None
    thinking_budget: Optional[int] = None  # enables extended thinking


class OpenAIResponsesOptions(_Frozen):
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: Optional[bool] = None
    reasoning_effort: Optional[str] = None
    reasoning_summary: Optional[str] = None


# ---------------------------------------------------------------------------
# Channel configs
# ---------------------------------------------------------------------------

class BaseChannelConfig(_Frozen):
    """Fields shared by every channel type.

    Durations are in seconds.
    """

    id: str
    name: str = ""
    enabled: bool = True
    api_key: str = ""
    model: str = ""
    timeout: float = 120.0
    prefer_stream: bool = False
    tool_mode: Optional[ToolMode] = None
    retry_enabled: bool = True
    retry_count: int = Field(default=3, ge=1)
    retry_interval: float = Field(default=3.0, ge=0)
    system_instruction: str = ""
    custom_headers: list[CustomHeader] = Field(default_factory=list)
    custom_headers_enabled: bool = False
    custom_body: CustomBodyConfig = Field(default_factory=CustomBodyConfig)
    custom_body_enabled: bool = False
    multimodal_tools_enabled: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.id


class GeminiConfig(BaseChannelConfig):
    type: Literal["gemini"] = "gemini"
    url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash"
    options: GeminiOptions = Field(default_factory=GeminiOptions)


class OpenAIConfig(BaseChannelConfig):
    type: Literal["openai"] = "openai"
    url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    options: OpenAIOptions = Field(default_factory=OpenAIOptions)


class AnthropicConfig(BaseChannelConfig):
    type: Literal["anthropic"] = "anthropic"
    url: str = "https://api.anthropic.com/v1"
    model: str = "claude-sonnet-4-5"
    options: AnthropicOptions = Field(default_factory=AnthropicOptions)


class OpenAIResponsesConfig(BaseChannelConfig):
    type: Literal["openai-responses"] = "openai-responses"
    url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    options: OpenAIResponsesOptions = Field(default_factory=OpenAIResponsesOptions)


ChannelConfig = Annotated[
    Union[GeminiConfig, OpenAIConfig, AnthropicConfig, OpenAIResponsesConfig],
    Field(discriminator="type"),
]

_channel_adapter: TypeAdapter[Any] = TypeAdapter(ChannelConfig)


def parse_channel(raw: dict[str, Any]) -> BaseChannelConfig:
    """Validate one raw mapping into the matching channel config model."""
    return _channel_adapter.validate_python(raw)


# ---------------------------------------------------------------------------
# Application settings
# ---------------------------------------------------------------------------

class ProxySettings(_Frozen):
    enabled: bool = False
    url: str = ""


class AppSettings(_Frozen):
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    default_tool_mode: ToolMode = DEFAULT_TOOL_MODE
    disabled_tools: list[str] = Field(default_factory=list)

    def get_effective_proxy_url(self) -> str | None:
        if self.proxy.enabled and self.proxy.url:
            return self.proxy.url
        return None

    def is_tool_enabled(self, name: str) -> bool:
        return name not in self.disabled_tools

    def get_default_tool_mode(self) -> str:
        return self.default_tool_mode


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class ConfigSource(Protocol):
    def get_config(self, config_id: str) -> BaseChannelConfig | None: ...


class SettingsSource(Protocol):
    def get_effective_proxy_url(self) -> str | None: ...

    def is_tool_enabled(self, name: str) -> bool: ...

    def get_default_tool_mode(self) -> str: ...


class ChannelStore:
    """In-memory ``ConfigSource`` holding the loaded channels and settings."""

    def __init__(
        self,
        channels: list[BaseChannelConfig] | None = None,
        settings: AppSettings | None = None,
    ) -> None:
        self._channels: dict[str, BaseChannelConfig] = {}
        self.settings = settings or AppSettings()
        for channel in channels or []:
            self.put(channel)

    def put(self, channel: BaseChannelConfig) -> None:
        self._channels[channel.id] = channel

    def get_config(self, config_id: str) -> BaseChannelConfig | None:
        return self._channels.get(config_id)

    def list_configs(self) -> list[BaseChannelConfig]:
        return list(self._channels.values())

    def __len__(self) -> int:
        return len(self._channels)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./open_channel.yaml"),
    Path.home() / ".config" / "open-channel" / "config.yaml",
]


def _parse_settings(raw: dict[str, Any] | None) -> AppSettings:
    if not raw:
        return AppSettings()
    try:
        return AppSettings.model_validate(raw)
    except ValidationError as e:
        _logger.warning("Invalid settings section, using defaults: %s", e)
        return AppSettings()


def load_config(path: str | Path | None = None) -> ChannelStore:
    """Load channels and settings from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ChannelStore
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ChannelStore()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ChannelStore()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    channels: list[BaseChannelConfig] = []
    for i, craw in enumerate(raw.get("channels") or []):
        try:
            channels.append(parse_channel(craw))
        except ValidationError as e:
            _logger.warning("Skipping invalid channel #%d: %s", i, e)

    return ChannelStore(channels, _parse_settings(raw.get("settings")))
