"""OpenAI Responses API formatter."""

from __future__ import annotations

import json
import logging
from typing import Any

from open_channel.config import BaseChannelConfig, OpenAIResponsesConfig
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
from .openai import parse_model_list

_logger = logging.getLogger(__name__)


def _usage_from_wire(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    details = raw.get("output_tokens_details") or {}
    return UsageMetadata(
        prompt_token_count=raw.get("input_tokens"),
        candidates_token_count=raw.get("output_tokens"),
        total_token_count=raw.get("total_tokens"),
        thoughts_token_count=details.get("reasoning_tokens"),
    )


def _history_to_input(history: list[Content]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for content in history:
        is_model = content.role == "model"
        message: list[dict[str, Any]] = []
        for part in content.parts:
            if isinstance(part, TextPart):
                if part.thought or not part.text:
                    continue
                kind = "output_text" if is_model else "input_text"
                message.append({"type": kind, "text": part.text})
            elif isinstance(part, InlineDataPart) and not is_model:
                message.append({
                    "type": "input_image",
                    "image_url": f"data:{part.mime_type};base64,{part.data}",
                })
            elif isinstance(part, FunctionCallPart):
                fc = part.function_call
                items.append({
                    "type": "function_call",
                    "call_id": fc.id or fc.name,
                    "name": fc.name,
                    "arguments": json.dumps(fc.args, ensure_ascii=False),
                })
            elif isinstance(part, FunctionResponsePart):
                items.append({
                    "type": "function_call_output",
                    "call_id": part.id or part.name,
                    "output": json.dumps(part.response, ensure_ascii=False),
                })
        if message:
            items.append({"role": "assistant" if is_model else "user", "content": message})
    return items


def _output_to_parts(output: list[dict[str, Any]]) -> list[ContentPart]:
    parts: list[ContentPart] = []
    for item in output:
        kind = item.get("type")
        if kind == "reasoning":
            for summary in item.get("summary") or []:
                if summary.get("text"):
                    parts.append(TextPart(text=summary["text"], thought=True))
        elif kind == "message":
            for block in item.get("content") or []:
                if block.get("type") == "output_text" and block.get("text"):
                    parts.append(TextPart(text=block["text"]))
        elif kind == "function_call":
            raw_args = item.get("arguments") or "{}"
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError:
                _logger.warning("Function call arguments are not valid JSON: %.80s", raw_args)
                args = {}
            parts.append(FunctionCallPart(function_call=FunctionCall(
                name=item.get("name", ""),
                args=args if isinstance(args, dict) else {},
                id=item.get("call_id") or item.get("id"),
            )))
    return parts


def _raise_error(event: dict[str, Any]) -> None:
    err = event.get("error") or (event.get("response") or {}).get("error") or {}
    message = err.get("message", "unknown error") if isinstance(err, dict) else str(err)
    raise ChannelError(ErrorType.API_ERROR, f"OpenAI Responses error: {message}", event)


class OpenAIResponsesFormatter(BaseFormatter):
    channel_type = "openai-responses"

    def build_request(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
        *,
        stream: bool = False,
    ) -> HttpRequestOptions:
        if not isinstance(config, OpenAIResponsesConfig):
            raise TypeError(f"expected an openai-responses channel, got {config.type!r}")
        opts = config.options

        body: dict[str, Any] = {
            "model": config.model,
            "input": _history_to_input(self.history(request, config)),
        }
        system = self.system_text(request, config, tools)
        if system:
            body["instructions"] = system
        native = self.native_tools(config, tools)
        if native:
            body["tools"] = [{"type": "function", **decl} for decl in native]
        body.update(drop_none({
            "temperature": opts.temperature,
            "max_output_tokens": opts.max_output_tokens,
            "top_p": opts.top_p,
        }))
        reasoning = drop_none({"effort": opts.reasoning_effort, "summary": opts.reasoning_summary})
        if reasoning:
            body["reasoning"] = reasoning
        if stream:
            body["stream"] = True

        headers = {"Authorization": f"Bearer {config.api_key}"}
        return self.finish_request(config, join_url(config.url, "responses"), headers, body)

    def parse_response(self, body: Any) -> Content:
        if not isinstance(body, dict):
            raise ValueError(f"unexpected Responses body: {body!r:.200}")
        if body.get("error"):
            _raise_error(body)
        return Content(
            role="model",
            parts=_output_to_parts(body.get("output") or []),
            usage=_usage_from_wire(body.get("usage")),
            model_version=body.get("model"),
            finish_reason=body.get("status"),
        )

    def parse_stream_chunk(self, event: Any) -> StreamChunk:
        if not isinstance(event, dict):
            raise ValueError(f"unexpected Responses stream event: {event!r:.200}")
        kind = event.get("type", "")

        if kind in ("error", "response.failed"):
            _raise_error(event)
        if kind == "response.output_text.delta":
            return StreamChunk(delta=[TextPart(text=event.get("delta", ""))])
        if kind == "response.reasoning_summary_text.delta":
            return StreamChunk(delta=[TextPart(text=event.get("delta", ""), thought=True)])
        if kind == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") != "function_call":
                return StreamChunk()
            return StreamChunk(delta=[FunctionCallPart(function_call=FunctionCall(
                name=item.get("name", ""),
                id=item.get("call_id"),
                index=event.get("output_index"),
                partial_args=item.get("arguments") or "",
            ))])
        if kind == "response.function_call_arguments.delta":
            return StreamChunk(delta=[FunctionCallPart(function_call=FunctionCall(
                index=event.get("output_index"),
                partial_args=event.get("delta", ""),
            ))])
        if kind in ("response.completed", "response.incomplete"):
            response = event.get("response") or {}
            return StreamChunk(
                usage=_usage_from_wire(response.get("usage")),
                finish_reason=response.get("status"),
                model_version=response.get("model"),
                done=True,
            )
        # created, in_progress, *.done and other bookkeeping events
        return StreamChunk()

    # -- model listing ---------------------------------------------------

    def build_models_request(self, config: BaseChannelConfig) -> HttpRequestOptions:
        headers = {"Authorization": f"Bearer {config.api_key}"}
        return self.models_request(config, join_url(config.url, "models"), headers)

    def parse_models(self, body: Any) -> list[ModelInfo]:
        return parse_model_list(body)
