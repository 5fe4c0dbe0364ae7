"""Formatter contract shared by every provider.

A formatter turns a ``GenerateRequest`` plus a channel config into one
``HttpRequestOptions`` and turns the provider's response body or stream
events back into ``Content`` / ``StreamChunk``.  It holds no per-request
state, so a single instance serves every concurrent call.
"""

from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from open_channel.channel.toolcalls import MARKERS, render_tool_prompt
from open_channel.config import BaseChannelConfig, CustomBodyConfig
from open_channel.errors import ChannelError, ErrorType
from open_channel.types import (
    Content,
    ContentPart,
    FunctionCallPart,
    FunctionResponsePart,
    GenerateRequest,
    HttpRequestOptions,
    ModelInfo,
    StreamChunk,
    TextPart,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Custom body / header helpers
# ---------------------------------------------------------------------------

def deep_merge(target: Any, source: Any) -> Any:
    """Merge *source* into a copy of *target*.

    Lists in the target are extended rather than replaced, so custom items
    can add to ``tools`` but never wipe it.  A list source over a non-list
    target, or any scalar source, replaces the target value.
    """
    if source is None:
        return target
    if isinstance(target, list):
        items = source if isinstance(source, list) else [source]
        return [*target, *items]
    if isinstance(source, list) or not isinstance(source, dict):
        return source
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in source.items():
        result[key] = deep_merge(result.get(key), value)
    return result


def _coerce_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def apply_custom_body(
    body: dict[str, Any],
    custom: CustomBodyConfig | None,
    enabled: bool,
) -> dict[str, Any]:
    """Merge the channel's custom body settings into *body*.

    Simple mode items use dotted keys for nesting (``extra_body.google``)
    and string values are parsed as JSON when possible.  Advanced mode
    merges a whole JSON object; invalid JSON is logged and ignored.
    """
    if not enabled or custom is None:
        return body

    result: dict[str, Any] = dict(body)
    if custom.mode == "simple":
        for item in custom.items:
            key = item.key.strip()
            if not item.enabled or not key:
                continue
            nested: Any = _coerce_value(item.value)
            for segment in reversed(key.split(".")):
                nested = {segment: nested}
            result = deep_merge(result, nested)
    elif custom.mode == "advanced" and custom.json_text.strip():
        try:
            data = json.loads(custom.json_text)
        except json.JSONDecodeError as e:
            _logger.warning("Ignoring invalid custom body JSON: %s", e)
            return result
        result = deep_merge(result, data)
    return result


def apply_custom_headers(
    headers: dict[str, str],
    config: BaseChannelConfig,
) -> dict[str, str]:
    if not config.custom_headers_enabled:
        return headers
    result = dict(headers)
    for header in config.custom_headers:
        if header.enabled and header.key.strip():
            result[header.key.strip()] = header.value
    return result


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


# ---------------------------------------------------------------------------
# Inline tool-mode history
# ---------------------------------------------------------------------------

def _render_call_markup(part: FunctionCallPart, mode: str) -> str:
    fc = part.function_call
    start, end = MARKERS[mode]
    if mode == "json":
        payload = json.dumps({"tool": fc.name, "parameters": fc.args}, ensure_ascii=False)
        return f"{start}\n{payload}\n{end}"
    args = json.dumps(fc.args, ensure_ascii=False)
    return f"{start}\n<name>{fc.name}</name>\n<args>{args}</args>\n{end}"


def inline_tool_history(history: list[Content], mode: str) -> list[Content]:
    """Rewrite function calls/results as plain text for inline tool modes."""
    if mode not in MARKERS:
        return history
    rewritten: list[Content] = []
    for content in history:
        parts: list[ContentPart] = []
        for part in content.parts:
            if isinstance(part, FunctionCallPart):
                parts.append(TextPart(text=_render_call_markup(part, mode)))
            elif isinstance(part, FunctionResponsePart):
                result = json.dumps(part.response, ensure_ascii=False)
                parts.append(TextPart(text=f"[Tool result: {part.name}]\n{result}"))
            else:
                parts.append(part)
        rewritten.append(Content(role=content.role, parts=parts))
    return rewritten


# ---------------------------------------------------------------------------
# Base formatter
# ---------------------------------------------------------------------------

class BaseFormatter(ABC):
    """Provider adapter consumed by the dispatcher.

    Subclasses set ``channel_type`` and implement the four abstract hooks.
    ``build_request`` may raise anything; the dispatcher reports it as
    ``VALIDATION_ERROR``.  The parse methods may raise anything as well and
    are reported as ``PARSE_ERROR``, except ``ChannelError`` which passes
    through unchanged (e.g. an error event inside a stream).

    Model listing is optional: providers with a listing endpoint override
    ``build_models_request`` and ``parse_models``.
    """

    channel_type: str = ""

    def validate_config(self, config: BaseChannelConfig) -> bool:
        return (
            getattr(config, "type", None) == self.channel_type
            and bool(config.url)
            and bool(config.model)
        )

    @abstractmethod
    def build_request(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
        *,
        stream: bool = False,
    ) -> HttpRequestOptions:
        """Build the provider HTTP request for one generate call."""

    @abstractmethod
    def parse_response(self, body: Any) -> Content:
        """Parse a complete (non-streamed) response body."""

    @abstractmethod
    def parse_stream_chunk(self, event: Any) -> StreamChunk:
        """Normalize one decoded stream event."""

    def build_models_request(self, config: BaseChannelConfig) -> HttpRequestOptions | None:
        """GET request for the provider's model list; None when it has none."""
        return None

    def parse_models(self, body: Any) -> list[ModelInfo]:
        return []

    # -- shared helpers ---------------------------------------------------

    @staticmethod
    def tool_mode(config: BaseChannelConfig) -> str:
        return config.tool_mode or "function_call"

    def native_tools(
        self,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
    ) -> list[dict[str, Any]] | None:
        """Declarations to send as native tools (none in inline modes)."""
        if not tools or self.tool_mode(config) != "function_call":
            return None
        return tools

    def system_text(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
    ) -> str:
        """System prompt, with the tool instructions appended in inline modes."""
        sections = []
        base = request.system_instruction or config.system_instruction
        if base:
            sections.append(base)
        mode = self.tool_mode(config)
        if tools and mode in MARKERS:
            sections.append(render_tool_prompt(tools, mode))
        return "\n\n".join(sections)

    def history(self, request: GenerateRequest, config: BaseChannelConfig) -> list[Content]:
        return inline_tool_history(request.history, self.tool_mode(config))

    def models_request(
        self,
        config: BaseChannelConfig,
        url: str,
        headers: dict[str, str],
    ) -> HttpRequestOptions:
        if not config.api_key:
            raise ChannelError(
                ErrorType.VALIDATION_ERROR, f"An API key is required to list models for {config.id}",
            )
        return HttpRequestOptions(
            url=url,
            method="GET",
            headers=apply_custom_headers(headers, config),
            timeout=config.timeout,
        )

    def finish_request(
        self,
        config: BaseChannelConfig,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> HttpRequestOptions:
        headers = {"Content-Type": "application/json", **headers}
        return HttpRequestOptions(
            url=url,
            method="POST",
            headers=apply_custom_headers(headers, config),
            body=apply_custom_body(
                copy.deepcopy(body), config.custom_body, config.custom_body_enabled,
            ),
            timeout=config.timeout,
        )


def drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}
