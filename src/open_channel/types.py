"""Shared data types for open-channel."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Union

from open_channel.cancel import CancelToken

# provider format name -> opaque signature
ThoughtSignatures = dict[str, str]


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------

@dataclass
class TextPart:
    """Plain answer text, or reasoning text when ``thought`` is set."""

    text: str
    thought: bool = False
    thought_signatures: ThoughtSignatures = field(default_factory=dict)


@dataclass
class FunctionCall:
    """A tool invocation requested by the model.

    ``index`` and ``partial_args`` only exist while a stream is being
    accumulated; they are stripped from the final ``Content``.
    """

    name: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    index: int | None = None
    partial_args: str | None = None


@dataclass
class FunctionCallPart:
    function_call: FunctionCall
    thought_signatures: ThoughtSignatures = field(default_factory=dict)


@dataclass
class FunctionResponsePart:
    """Result of a tool execution, sent back to the model in history."""

    name: str
    response: dict[str, Any]
    id: str | None = None
    thought_signatures: ThoughtSignatures = field(default_factory=dict)


@dataclass
class InlineDataPart:
    mime_type: str
    data: str  # base64
    display_name: str | None = None
    thought_signatures: ThoughtSignatures = field(default_factory=dict)


@dataclass
class RedactedThinkingPart:
    """Encrypted reasoning block that must be replayed verbatim."""

    data: str
    thought_signatures: ThoughtSignatures = field(default_factory=dict)


@dataclass
class SignaturePart:
    """Carrier for thought signatures that are not attached to any content."""

    thought_signatures: ThoughtSignatures = field(default_factory=dict)


ContentPart = Union[
    TextPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    RedactedThinkingPart,
    SignaturePart,
]


def part_to_dict(part: ContentPart) -> dict[str, Any]:
    """Serialize a part, omitting fields that belong to other part kinds."""
    data: dict[str, Any]
    if isinstance(part, TextPart):
        data = {"text": part.text}
        if part.thought:
            data["thought"] = True
    elif isinstance(part, FunctionCallPart):
        fc = part.function_call
        call: dict[str, Any] = {"name": fc.name, "args": fc.args}
        if fc.id is not None:
            call["id"] = fc.id
        if fc.index is not None:
            call["index"] = fc.index
        if fc.partial_args is not None:
            call["partialArgs"] = fc.partial_args
        data = {"functionCall": call}
    elif isinstance(part, FunctionResponsePart):
        resp: dict[str, Any] = {"name": part.name, "response": part.response}
        if part.id is not None:
            resp["id"] = part.id
        data = {"functionResponse": resp}
    elif isinstance(part, InlineDataPart):
        inline: dict[str, Any] = {"mimeType": part.mime_type, "data": part.data}
        if part.display_name:
            inline["displayName"] = part.display_name
        data = {"inlineData": inline}
    elif isinstance(part, RedactedThinkingPart):
        data = {"redactedThinking": part.data}
    else:
        data = {}
    if part.thought_signatures:
        data["thoughtSignatures"] = dict(part.thought_signatures)
    return data


# ---------------------------------------------------------------------------
# Answers and stream chunks
# ---------------------------------------------------------------------------

@dataclass
class UsageMetadata:
    prompt_token_count: int | None = None
    candidates_token_count: int | None = None
    total_token_count: int | None = None
    thoughts_token_count: int | None = None
    prompt_tokens_details: list[dict[str, Any]] | None = None
    candidates_tokens_details: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        out = {
            "promptTokenCount": self.prompt_token_count,
            "candidatesTokenCount": self.candidates_token_count,
            "totalTokenCount": self.total_token_count,
            "thoughtsTokenCount": self.thoughts_token_count,
            "promptTokensDetails": self.prompt_tokens_details,
            "candidatesTokensDetails": self.candidates_tokens_details,
        }
        return {k: v for k, v in out.items() if v is not None}


@dataclass
class Content:
    """A complete conversation turn (history entry or terminal answer)."""

    role: str = "model"
    parts: list[ContentPart] = field(default_factory=list)
    usage: UsageMetadata | None = None
    model_version: str | None = None
    finish_reason: str | None = None
    thinking_start_time: float | None = None
    thinking_duration_ms: float | None = None
    response_duration_ms: float | None = None
    stream_duration_ms: float | None = None
    first_chunk_time: float | None = None
    chunk_count: int | None = None

    @property
    def text(self) -> str:
        return "".join(
            p.text for p in self.parts if isinstance(p, TextPart) and not p.thought
        )

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if isinstance(p, FunctionCallPart)]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "role": self.role,
            "parts": [part_to_dict(p) for p in self.parts],
        }
        if self.usage is not None:
            out["usageMetadata"] = self.usage.to_dict()
        for key, value in (
            ("modelVersion", self.model_version),
            ("finishReason", self.finish_reason),
            ("thinkingStartTime", self.thinking_start_time),
            ("thinkingDuration", self.thinking_duration_ms),
            ("responseDuration", self.response_duration_ms),
            ("streamDuration", self.stream_duration_ms),
            ("firstChunkTime", self.first_chunk_time),
            ("chunkCount", self.chunk_count),
        ):
            if value is not None:
                out[key] = value
        return out


@dataclass
class StreamChunk:
    """One provider-normalized streaming event."""

    delta: list[ContentPart] = field(default_factory=list)
    usage: UsageMetadata | None = None
    finish_reason: str | None = None
    model_version: str | None = None
    done: bool = False


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@dataclass
class GenerateRequest:
    """Everything the dispatcher needs for one logical generate call."""

    config_id: str
    history: list[Content] = field(default_factory=list)
    model_override: str | None = None
    cancel: CancelToken | None = None
    skip_tools: bool = False
    skip_retry: bool = False
    stream: bool | None = None
    system_instruction: str | None = None


@dataclass
class HttpRequestOptions:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: float | None = None  # seconds


@dataclass
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None


# ---------------------------------------------------------------------------
# Retry status events
# ---------------------------------------------------------------------------

class RetryEventType(enum.Enum):
    """Retry progress notifications published by the dispatcher."""

    RETRYING = "retrying"
    RETRY_SUCCESS = "retrySuccess"
    RETRY_FAILED = "retryFailed"


@dataclass
class RetryStatus:
    type: RetryEventType
    attempt: int
    max_attempts: int
    error: str | None = None
    error_details: Any = None
    next_retry_in: float | None = None  # seconds
    config_id: str | None = None
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Model listing
# ---------------------------------------------------------------------------

@dataclass
class ModelInfo:
    """One model reported by a provider's model-listing endpoint."""

    id: str
    name: str | None = None
    description: str | None = None
    context_window: int | None = None
    max_output_tokens: int | None = None
