"""Gemini ``generateContent`` formatter."""

from __future__ import annotations

from typing import Any

from open_channel.config import BaseChannelConfig, GeminiConfig
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
    SignaturePart,
    StreamChunk,
    TextPart,
    UsageMetadata,
)

from .base import BaseFormatter, drop_none, join_url

SIGNATURE_FORMAT = "gemini"


def _part_to_wire(part: ContentPart) -> dict[str, Any] | None:
    wire: dict[str, Any]
    if isinstance(part, TextPart):
        wire = {"text": part.text}
        if part.thought:
            wire["thought"] = True
    elif isinstance(part, FunctionCallPart):
        fc = part.function_call
        wire = {"functionCall": drop_none({"name": fc.name, "args": fc.args, "id": fc.id})}
    elif isinstance(part, FunctionResponsePart):
        wire = {
            "functionResponse": drop_none(
                {"name": part.name, "response": part.response, "id": part.id}
            )
        }
    elif isinstance(part, InlineDataPart):
        wire = {"inlineData": {"mimeType": part.mime_type, "data": part.data}}
    else:
        # Redacted thinking and bare signature carriers have no Gemini form.
        return None
    signature = part.thought_signatures.get(SIGNATURE_FORMAT)
    if signature:
        wire["thoughtSignature"] = signature
    return wire


def _part_from_wire(raw: dict[str, Any]) -> ContentPart | None:
    signatures = {}
    if raw.get("thoughtSignature"):
        signatures[SIGNATURE_FORMAT] = raw["thoughtSignature"]

    if "functionCall" in raw:
        fc = raw["functionCall"] or {}
        return FunctionCallPart(
            function_call=FunctionCall(
                name=fc.get("name", ""), args=fc.get("args") or {}, id=fc.get("id"),
            ),
            thought_signatures=signatures,
        )
    if "inlineData" in raw:
        data = raw["inlineData"] or {}
        return InlineDataPart(
            mime_type=data.get("mimeType", ""),
            data=data.get("data", ""),
            display_name=data.get("displayName"),
            thought_signatures=signatures,
        )
    if "text" in raw:
        return TextPart(
            text=raw.get("text") or "",
            thought=bool(raw.get("thought")),
            thought_signatures=signatures,
        )
    if signatures:
        return SignaturePart(thought_signatures=signatures)
    return None


def _usage_from_wire(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    return UsageMetadata(
        prompt_token_count=raw.get("promptTokenCount"),
        candidates_token_count=raw.get("candidatesTokenCount"),
        total_token_count=raw.get("totalTokenCount"),
        thoughts_token_count=raw.get("thoughtsTokenCount"),
        prompt_tokens_details=raw.get("promptTokensDetails"),
        candidates_tokens_details=raw.get("candidatesTokensDetails"),
    )


def _check_error(body: Any) -> None:
    if isinstance(body, dict) and body.get("error"):
        err = body["error"]
        message = err.get("message", "unknown error") if isinstance(err, dict) else str(err)
        raise ChannelError(ErrorType.API_ERROR, f"Gemini error: {message}", body)


class GeminiFormatter(BaseFormatter):
    channel_type = "gemini"

    def build_request(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        tools: list[dict[str, Any]] | None,
        *,
        stream: bool = False,
    ) -> HttpRequestOptions:
        if not isinstance(config, GeminiConfig):
            raise TypeError(f"expected a gemini channel, got {config.type!r}")
        opts = config.options

        contents = []
        for content in self.history(request, config):
            parts = [w for w in (_part_to_wire(p) for p in content.parts) if w]
            if parts:
                role = "model" if content.role == "model" else "user"
                contents.append({"role": role, "parts": parts})

        body: dict[str, Any] = {"contents": contents}
        system = self.system_text(request, config, tools)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        native = self.native_tools(config, tools)
        if native:
            body["tools"] = [{"functionDeclarations": native}]

        generation = drop_none({
            "temperature": opts.temperature,
            "maxOutputTokens": opts.max_output_tokens,
            "topP": opts.top_p,
            "topK": opts.top_k,
        })
        if opts.include_thoughts or opts.thinking_budget is not None:
            generation["thinkingConfig"] = drop_none({
                "includeThoughts": opts.include_thoughts or None,
                "thinkingBudget": opts.thinking_budget,
            })
        if generation:
            body["generationConfig"] = generation

        action = "streamGenerateContent?alt=sse" if stream else "generateContent"
        url = join_url(config.url, f"models/{config.model}:{action}")
        return self.finish_request(config, url, {"x-goog-api-key": config.api_key}, body)

    def _parse_candidate(self, body: dict[str, Any]) -> tuple[list[ContentPart], str | None]:
        candidates = body.get("candidates") or []
        if not candidates:
            return [], None
        candidate = candidates[0]
        raw_parts = (candidate.get("content") or {}).get("parts") or []
        parts = [p for p in (_part_from_wire(r) for r in raw_parts) if p is not None]
        return parts, candidate.get("finishReason")

    def parse_response(self, body: Any) -> Content:
        _check_error(body)
        if not isinstance(body, dict):
            raise ValueError(f"unexpected Gemini response: {body!r:.200}")
        parts, finish = self._parse_candidate(body)
        return Content(
            role="model",
            parts=parts,
            usage=_usage_from_wire(body.get("usageMetadata")),
            model_version=body.get("modelVersion"),
            finish_reason=finish,
        )

    def parse_stream_chunk(self, event: Any) -> StreamChunk:
        # alt=sse yields objects; the array framing may wrap them in a list
        if isinstance(event, list):
            event = event[0] if event else {}
        _check_error(event)
        if not isinstance(event, dict):
            raise ValueError(f"unexpected Gemini stream event: {event!r:.200}")
        parts, finish = self._parse_candidate(event)
        return StreamChunk(
            delta=parts,
            usage=_usage_from_wire(event.get("usageMetadata")),
            finish_reason=finish,
            model_version=event.get("modelVersion"),
            done=finish is not None,
        )

    # -- model listing ---------------------------------------------------

    def build_models_request(self, config: BaseChannelConfig) -> HttpRequestOptions:
        url = join_url(config.url, "models?pageSize=1000")
        return self.models_request(config, url, {"x-goog-api-key": config.api_key})

    def parse_models(self, body: Any) -> list[ModelInfo]:
        _check_error(body)
        models = []
        for raw in body.get("models") or []:
            # embedding and tuning-only models cannot serve generateContent
            if "generateContent" not in (raw.get("supportedGenerationMethods") or []):
                continue
            models.append(ModelInfo(
                id=raw["name"].removeprefix("models/"),
                name=raw.get("displayName"),
                description=raw.get("description"),
                context_window=raw.get("inputTokenLimit"),
                max_output_tokens=raw.get("outputTokenLimit"),
            ))
        return models
