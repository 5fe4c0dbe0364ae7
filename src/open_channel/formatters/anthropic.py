"""Anthropic Messages formatter."""

from __future__ import annotations

import json
from typing import Any

from open_channel.config import AnthropicConfig, BaseChannelConfig
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
    RedactedThinkingPart,
    SignaturePart,
    StreamChunk,
    TextPart,
    UsageMetadata,
)

from .base import BaseFormatter, drop_none, join_url

API_VERSION = "2023-06-01"
SIGNATURE_FORMAT = "anthropic"


def _usage_from_wire(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    prompt = raw.get("input_tokens")
    output = raw.get("output_tokens")
    total = prompt + output if prompt is not None and output is not None else None
    return UsageMetadata(
        prompt_token_count=prompt,
        candidates_token_count=output,
        total_token_count=total,
    )


def _content_signature(content: Content) -> str | None:
    # Streamed answers keep the signature on a separate carrier part.
    for part in content.parts:
        if isinstance(part, SignaturePart) and part.thought_signatures.get(SIGNATURE_FORMAT):
            return part.thought_signatures[SIGNATURE_FORMAT]
    return None


def _content_to_blocks(content: Content) -> list[dict[str, Any]]:
    fallback_signature = _content_signature(content)
    blocks: list[dict[str, Any]] = []
    for part in content.parts:
        if isinstance(part, TextPart):
            if part.thought:
                signature = part.thought_signatures.get(SIGNATURE_FORMAT) or fallback_signature
                # Thinking can only be replayed with its signature.
                if signature and part.text:
                    blocks.append({"type": "thinking", "thinking": part.text, "signature": signature})
            elif part.text:
                blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, RedactedThinkingPart):
            blocks.append({"type": "redacted_thinking", "data": part.data})
        elif isinstance(part, FunctionCallPart):
            fc = part.function_call
            blocks.append({
                "type": "tool_use",
                "id": fc.id or fc.name,
                "name": fc.name,
                "input": fc.args,
            })
        elif isinstance(part, FunctionResponsePart):
            blocks.append({
                "type": "tool_result",
                "tool_use_id": part.id or part.name,
                "content": json.dumps(part.response, ensure_ascii=False),
            })
        elif isinstance(part, InlineDataPart):
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
            })
    return blocks


def _block_to_part(block: dict[str, Any], index: int | None = None) -> ContentPart | None:
    kind = block.get("type")
    if kind == "text":
        return TextPart(text=block.get("text") or "")
    if kind == "thinking":
        signatures = {SIGNATURE_FORMAT: block["signature"]} if block.get("signature") else {}
        return TextPart(text=block.get("thinking") or "", thought=True, thought_signatures=signatures)
    if kind == "redacted_thinking":
        return RedactedThinkingPart(data=block.get("data", ""))
    if kind == "tool_use":
        return FunctionCallPart(function_call=FunctionCall(
            name=block.get("name", ""),
            args=block.get("input") or {},
            id=block.get("id"),
            index=index,
        ))
    return None


def _raise_stream_error(event: dict[str, Any]) -> None:
    err = event.get("error") or {}
    message = err.get("message", "unknown error") if isinstance(err, dict) else str(err)
    raise ChannelError(ErrorType.API_ERROR, f"Anthropic error: {message}", event)


class AnthropicFormatter(BaseFormatter):
    channel_type = "anthropic"

    def build_request(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
        *,
        stream: bool = False,
    ) -> HttpRequestOptions:
        if not isinstance(config, AnthropicConfig):
            raise TypeError(f"expected an anthropic channel, got {config.type!r}")
        opts = config.options

        messages = []
        for content in self.history(request, config):
            blocks = _content_to_blocks(content)
            if blocks:
                role = "assistant" if content.role == "model" else "user"
                messages.append({"role": role, "content": blocks})

        body: dict[str, Any] = {
            "model": config.model,
            "max_tokens": opts.max_tokens,
            "messages": messages,
        }
        system = self.system_text(request, config, tools)
        if system:
            body["system"] = system
        native = self.native_tools(config, tools)
        if native:
            body["tools"] = [
                {
                    "name": decl["name"],
                    "description": decl.get("description", ""),
                    "input_schema": decl.get("parameters") or {"type": "object", "properties": {}},
                }
                for decl in native
            ]
        body.update(drop_none({"temperature": opts.temperature, "top_p": opts.top_p}))
        if opts.thinking_budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": opts.thinking_budget}
        if stream:
            body["stream"] = True

        headers = {"x-api-key": config.api_key, "anthropic-version": API_VERSION}
        return self.finish_request(config, join_url(config.url, "messages"), headers, body)

    def parse_response(self, body: Any) -> Content:
        if not isinstance(body, dict):
            raise ValueError(f"unexpected Anthropic response: {body!r:.200}")
        if body.get("type") == "error":
            _raise_stream_error(body)
        parts = [
            p for p in (_block_to_part(b) for b in body.get("content") or []) if p is not None
        ]
        return Content(
            role="model",
            parts=parts,
            usage=_usage_from_wire(body.get("usage")),
            model_version=body.get("model"),
            finish_reason=body.get("stop_reason"),
        )

    def parse_stream_chunk(self, event: Any) -> StreamChunk:
        if not isinstance(event, dict):
            raise ValueError(f"unexpected Anthropic stream event: {event!r:.200}")
        kind = event.get("type")

        if kind == "error":
            _raise_stream_error(event)
        if kind == "message_start":
            message = event.get("message") or {}
            return StreamChunk(
                usage=_usage_from_wire(message.get("usage")),
                model_version=message.get("model"),
            )
        if kind == "content_block_start":
            block = event.get("content_block") or {}
            part = _block_to_part(block, index=event.get("index"))
            if isinstance(part, FunctionCallPart):
                # input arrives through input_json_delta
                part.function_call.args = {}
                part.function_call.partial_args = ""
            elif isinstance(part, TextPart) and not part.text:
                part = None
            return StreamChunk(delta=[part] if part else [])
        if kind == "content_block_delta":
            return StreamChunk(delta=self._delta_parts(event))
        if kind == "message_delta":
            delta = event.get("delta") or {}
            return StreamChunk(
                usage=_usage_from_wire(event.get("usage")),
                finish_reason=delta.get("stop_reason"),
            )
        if kind == "message_stop":
            return StreamChunk(done=True)
        # ping, content_block_stop
        return StreamChunk()

    @staticmethod
    def _delta_parts(event: dict[str, Any]) -> list[ContentPart]:
        delta = event.get("delta") or {}
        kind = delta.get("type")
        if kind == "text_delta":
            return [TextPart(text=delta.get("text", ""))]
        if kind == "thinking_delta":
            return [TextPart(text=delta.get("thinking", ""), thought=True)]
        if kind == "signature_delta":
            return [SignaturePart(thought_signatures={SIGNATURE_FORMAT: delta.get("signature", "")})]
        if kind == "input_json_delta":
            return [FunctionCallPart(function_call=FunctionCall(
                index=event.get("index"),
                partial_args=delta.get("partial_json", ""),
            ))]
        return []

    # -- model listing ---------------------------------------------------

    def build_models_request(self, config: BaseChannelConfig) -> HttpRequestOptions:
        headers = {"x-api-key": config.api_key, "anthropic-version": API_VERSION}
        return self.models_request(config, join_url(config.url, "models?limit=1000"), headers)

    def parse_models(self, body: Any) -> list[ModelInfo]:
        if body.get("type") == "error":
            _raise_stream_error(body)
        models = []
        for raw in body.get("data") or []:
            created = raw.get("created_at")
            models.append(ModelInfo(
                id=raw["id"],
                name=raw.get("display_name"),
                description=f"Created: {created[:10]}" if created else None,
            ))
        return models
