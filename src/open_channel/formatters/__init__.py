"""Provider formatters and the registry that binds them to channel types."""

from __future__ import annotations

from open_channel.formatters.anthropic import AnthropicFormatter
from open_channel.formatters.base import BaseFormatter, apply_custom_body, deep_merge
from open_channel.formatters.gemini import GeminiFormatter
from open_channel.formatters.openai import OpenAIFormatter
from open_channel.formatters.openai_responses import OpenAIResponsesFormatter


class FormatterRegistry:
    """One formatter per channel type; populated at startup, read afterwards."""

    def __init__(self, formatters: list[BaseFormatter] | None = None) -> None:
        self._formatters: dict[str, BaseFormatter] = {}
        for formatter in formatters or []:
            self.register(formatter)

    def register(self, formatter: BaseFormatter) -> None:
        if formatter.channel_type in self._formatters:
            raise ValueError(f"formatter already registered for {formatter.channel_type!r}")
        self._formatters[formatter.channel_type] = formatter

    def get(self, channel_type: str) -> BaseFormatter | None:
        return self._formatters.get(channel_type)

    def has(self, channel_type: str) -> bool:
        return channel_type in self._formatters

    def supported_types(self) -> list[str]:
        return list(self._formatters)


def create_default_registry() -> FormatterRegistry:
    return FormatterRegistry([
        GeminiFormatter(),
        OpenAIFormatter(),
        AnthropicFormatter(),
        OpenAIResponsesFormatter(),
    ])


default_registry = create_default_registry()

__all__ = [
    "AnthropicFormatter",
    "BaseFormatter",
    "FormatterRegistry",
    "GeminiFormatter",
    "OpenAIFormatter",
    "OpenAIResponsesFormatter",
    "apply_custom_body",
    "create_default_registry",
    "deep_merge",
    "default_registry",
]
