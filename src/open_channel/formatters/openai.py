"""OpenAI Chat Completions formatter (also fits compatible local servers)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from open_channel.config import BaseChannelConfig, OpenAIConfig
from open_channel.errors import ChannelError, ErrorType
from open_channel.types import (
    Content,
    ContentPart,
    FunctionCall,
    FunctionCallPart,
    FunctionResponsePart,
    GenerateRequest,
    HttpRequestOptions,
    InlineDataPart,
    ModelInfo,
    StreamChunk,
    TextPart,
    UsageMetadata,
)

from .base import BaseFormatter, drop_none, join_url

_logger = logging.getLogger(__name__)


def _loads_args(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        _logger.warning("Tool call arguments are not valid JSON: %.80s", raw)
        return {}
    return value if isinstance(value, dict) else {}


def _usage_from_wire(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    details = raw.get("completion_tokens_details") or {}
    return UsageMetadata(
        prompt_token_count=raw.get("prompt_tokens"),
        candidates_token_count=raw.get("completion_tokens"),
        total_token_count=raw.get("total_tokens"),
        thoughts_token_count=details.get("reasoning_tokens"),
    )


def _check_error(body: Any) -> None:
    if isinstance(body, dict) and body.get("error"):
        err = body["error"]
        message = err.get("message", "unknown error") if isinstance(err, dict) else str(err)
        raise ChannelError(ErrorType.API_ERROR, f"OpenAI error: {message}", body)


def parse_model_list(body: Any) -> list[ModelInfo]:
    """Models from an OpenAI-style ``GET /models`` body (shared by compatible APIs)."""
    _check_error(body)
    models = []
    for raw in body.get("data") or []:
        created = raw.get("created")
        description = None
        if isinstance(created, (int, float)):
            day = datetime.fromtimestamp(created, tz=timezone.utc).date()
            description = f"Created: {day.isoformat()}"
        models.append(ModelInfo(id=raw["id"], name=raw["id"], description=description))
    return models


def _user_content(parts: list[ContentPart]) -> str | list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart) and not part.thought:
            items.append({"type": "text", "text": part.text})
        elif isinstance(part, InlineDataPart):
            items.append({
                "type": "image_url",
                "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
            })
    if all(item["type"] == "text" for item in items):
        return "".join(item["text"] for item in items)
    return items


def _history_to_messages(history: list[Content]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for content in history:
        tool_results = [p for p in content.parts if isinstance(p, FunctionResponsePart)]
        others = [p for p in content.parts if not isinstance(p, FunctionResponsePart)]

        for result in tool_results:
            messages.append({
                "role": "tool",
                "tool_call_id": result.id or result.name,
                "content": json.dumps(result.response, ensure_ascii=False),
            })

        if content.role == "model":
            text = "".join(
                p.text for p in others if isinstance(p, TextPart) and not p.thought
            )
            calls = [
                {
                    "id": p.function_call.id or p.function_call.name,
                    "type": "function",
                    "function": {
                        "name": p.function_call.name,
                        "arguments": json.dumps(p.function_call.args, ensure_ascii=False),
                    },
                }
                for p in others
                if isinstance(p, FunctionCallPart)
            ]
            if not text and not calls:
                continue
            message: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                message["tool_calls"] = calls
            messages.append(message)
        elif others:
            user = _user_content(others)
            if user:
                messages.append({"role": "user", "content": user})
    return messages


class OpenAIFormatter(BaseFormatter):
    channel_type = "openai"

    def build_request(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
        *,
        stream: bool = False,
    ) -> HttpRequestOptions:
        if not isinstance(config, OpenAIConfig):
            raise TypeError(f"expected an openai channel, got {config.type!r}")
        opts = config.options

        messages = _history_to_messages(self.history(request, config))
        system = self.system_text(request, config, tools)
        if system:
            messages.insert(0, {"role": "system", "content": system})

        body: dict[str, Any] = {"model": config.model, "messages": messages}
        body.update(drop_none({
            "temperature": opts.temperature,
            "max_tokens": opts.max_tokens,
            "top_p": opts.top_p,
            "reasoning_effort": opts.reasoning_effort,
        }))
        native = self.native_tools(config, tools)
        if native:
            body["tools"] = [{"type": "function", "function": decl} for decl in native]
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}

        headers = {"Authorization": f"Bearer {config.api_key}"}
        return self.finish_request(config, join_url(config.url, "chat/completions"), headers, body)

    def parse_response(self, body: Any) -> Content:
        _check_error(body)
        if not isinstance(body, dict):
            raise ValueError(f"unexpected OpenAI response: {body!r:.200}")
        choices = body.get("choices") or []
        if not choices:
            raise ValueError("OpenAI response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        parts: list[ContentPart] = []
        if message.get("reasoning_content"):
            parts.append(TextPart(text=message["reasoning_content"], thought=True))
        if message.get("content"):
            parts.append(TextPart(text=message["content"]))
        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            parts.append(FunctionCallPart(function_call=FunctionCall(
                name=func.get("name", ""),
                args=_loads_args(func.get("arguments")),
                id=tc.get("id"),
            )))

        return Content(
            role="model",
            parts=parts,
            usage=_usage_from_wire(body.get("usage")),
            model_version=body.get("model"),
            finish_reason=choice.get("finish_reason"),
        )

    def parse_stream_chunk(self, event: Any) -> StreamChunk:
        _check_error(event)
        if not isinstance(event, dict):
            raise ValueError(f"unexpected OpenAI stream event: {event!r:.200}")

        delta_parts: list[ContentPart] = []
        finish = None
        choices = event.get("choices") or []
        if choices:
            choice = choices[0]
            delta = choice.get("delta") or {}
            finish = choice.get("finish_reason")
            if delta.get("reasoning_content"):
                delta_parts.append(TextPart(text=delta["reasoning_content"], thought=True))
            if delta.get("content"):
                delta_parts.append(TextPart(text=delta["content"]))
            for tc in delta.get("tool_calls") or []:
                func = tc.get("function") or {}
                delta_parts.append(FunctionCallPart(function_call=FunctionCall(
                    name=func.get("name") or "",
                    id=tc.get("id"),
                    index=tc.get("index"),
                    partial_args=func.get("arguments") or "",
                )))

        # With include_usage the last event has empty choices and the usage.
        return StreamChunk(
            delta=delta_parts,
            usage=_usage_from_wire(event.get("usage")),
            finish_reason=finish,
            model_version=event.get("model"),
            done=finish is not None,
        )

    # -- model listing ---------------------------------------------------

    def build_models_request(self, config: BaseChannelConfig) -> HttpRequestOptions:
        headers = {"Authorization": f"Bearer {config.api_key}"}
        return self.models_request(config, join_url(config.url, "models"), headers)

    def parse_models(self, body: Any) -> list[ModelInfo]:
        return parse_model_list(body)
