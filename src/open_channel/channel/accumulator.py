"""Reduce an ordered sequence of ``StreamChunk`` into one ``Content``.

Text deltas are appended to the previous text part when the ``thought``
flag matches.  Tool-call fragments are reassembled by ``index`` first, then
by ``id``, then (for fragments carrying neither) by position: a bare
``partial_args`` continuation belongs to the most recently added part.
Providers interleave fragments of parallel calls, so position alone is
never trusted when an identifier is available.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any

from open_channel.types import (
    Content,
    ContentPart,
    FunctionCall,
    FunctionCallPart,
    RedactedThinkingPart,
    SignaturePart,
    StreamChunk,
    TextPart,
    ThoughtSignatures,
    UsageMetadata,
)

from . import toolcalls

_logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


def _try_parse_args(raw: str | None) -> dict[str, Any] | None:
    """Parse accumulated argument JSON; None while it is still incomplete."""
    if not raw or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _fragments_match(
    existing: FunctionCall,
    incoming: FunctionCall,
    is_last_part: bool,
) -> bool:
    if incoming.index is not None and existing.index is not None:
        return incoming.index == existing.index
    if incoming.id and existing.id:
        return incoming.id == existing.id
    return (
        not incoming.id
        and incoming.index is None
        and incoming.partial_args is not None
        and is_last_part
    )


class StreamAccumulator:
    """Accumulates one streaming generation.

    Parameters
    ----------
    tool_mode:
        ``function_call`` (native deltas only), ``xml`` or ``json``.  In the
        inline modes complete tool-call markup in the text is turned into
        ``FunctionCallPart`` as soon as its closing marker arrives.
    provider_type:
        Channel type, used as the signature format for signatures that
        arrive without one.
    """

    def __init__(
        self,
        tool_mode: str = "function_call",
        provider_type: str = "gemini",
    ) -> None:
        self.tool_mode = tool_mode
        self.provider_type = provider_type
        self.reset()

    def reset(self) -> None:
        self.parts: list[ContentPart] = []
        self._done = False
        self._usage: UsageMetadata | None = None
        self._finish_reason: str | None = None
        self._model_version: str | None = None
        self._signatures: ThoughtSignatures = {}
        self._thinking_start_time: float | None = None
        self._thinking_duration: float | None = None
        self.has_received_normal_text = False
        self._chunk_count = 0
        self._first_chunk_time: float | None = None
        self._last_chunk_time: float | None = None
        self._request_start_time: float | None = None

    def set_request_start_time(self, timestamp_ms: float | None = None) -> None:
        self._request_start_time = _now_ms() if timestamp_ms is None else timestamp_ms

    @property
    def request_start_time(self) -> float | None:
        return self._request_start_time

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def add(self, chunk: StreamChunk) -> None:
        now = _now_ms()
        self._chunk_count += 1
        if self._first_chunk_time is None:
            self._first_chunk_time = now
        self._last_chunk_time = now

        for part in chunk.delta:
            self.add_part(part)

        # Usage can arrive in a trailing chunk after done was already set.
        if chunk.usage is not None:
            self._usage = copy.copy(chunk.usage)
        if chunk.finish_reason:
            self._finish_reason = chunk.finish_reason
        if chunk.model_version:
            self._model_version = chunk.model_version
        if chunk.done:
            self._done = True

    def add_part(self, part: ContentPart) -> None:
        if part.thought_signatures:
            self._signatures.update(part.thought_signatures)

        if isinstance(part, SignaturePart):
            return
        if isinstance(part, FunctionCallPart):
            self._add_function_call(part)
            return
        if isinstance(part, TextPart):
            self._add_text(part)
            self._extract_tool_calls()
            return
        self.parts.append(copy.deepcopy(part))

    def _add_text(self, part: TextPart) -> None:
        if part.thought:
            if self._thinking_start_time is None:
                self._thinking_start_time = _now_ms()
        elif part.text and not self.has_received_normal_text:
            self.has_received_normal_text = True
            if self._thinking_start_time is not None:
                self._thinking_duration = _now_ms() - self._thinking_start_time

        last = self.parts[-1] if self.parts else None
        if isinstance(last, TextPart) and last.thought == part.thought:
            last.text += part.text
            if part.thought_signatures:
                last.thought_signatures.update(part.thought_signatures)
            return
        self.parts.append(copy.deepcopy(part))

    def _add_function_call(self, part: FunctionCallPart) -> None:
        incoming = part.function_call
        last_pos = len(self.parts) - 1

        for pos in range(last_pos, -1, -1):
            existing_part = self.parts[pos]
            if not isinstance(existing_part, FunctionCallPart):
                continue
            existing = existing_part.function_call
            if not _fragments_match(existing, incoming, pos == last_pos):
                continue

            if incoming.name and not existing.name:
                existing.name = incoming.name
            if incoming.id and not existing.id:
                existing.id = incoming.id
            if incoming.index is not None and existing.index is None:
                existing.index = incoming.index
            if part.thought_signatures:
                existing_part.thought_signatures.update(part.thought_signatures)
            if incoming.partial_args is not None:
                existing.partial_args = (existing.partial_args or "") + incoming.partial_args
                parsed = _try_parse_args(existing.partial_args)
                if parsed is not None:
                    existing.args = parsed
            return

        new_part = copy.deepcopy(part)
        parsed = _try_parse_args(new_part.function_call.partial_args)
        if parsed is not None:
            new_part.function_call.args = parsed
        self.parts.append(new_part)

    # ------------------------------------------------------------------
    # Inline tool markup
    # ------------------------------------------------------------------

    def _extract_tool_calls(self) -> None:
        markers = toolcalls.MARKERS.get(self.tool_mode)
        if markers is None:
            return
        start_marker, end_marker = markers

        rebuilt: list[ContentPart] = []
        changed = False
        for part in self.parts:
            if not isinstance(part, TextPart) or start_marker not in part.text:
                rebuilt.append(part)
                continue

            text = part.text
            # Unparsable blocks stay in the text verbatim, spacing included.
            literal = ""
            converted = False
            while True:
                start = text.find(start_marker)
                end = text.find(end_marker, start + len(start_marker)) if start != -1 else -1
                if start == -1 or end == -1:
                    break
                block_end = end + len(end_marker)
                calls = toolcalls.parse_markup(self.tool_mode, text[start:block_end])
                if not calls:
                    _logger.debug("Keeping unparsable tool markup as text: %.80s", text[start:block_end])
                    literal += text[:block_end]
                    text = text[block_end:]
                    continue

                converted = True
                before = (literal + text[:start]).strip()
                if before:
                    rebuilt.append(TextPart(text=before, thought=part.thought))
                rebuilt.extend(FunctionCallPart(function_call=c) for c in calls)
                literal = ""
                text = text[block_end:].lstrip()

            if not converted:
                rebuilt.append(part)
                continue
            changed = True
            text = literal + text
            if text:
                rebuilt.append(TextPart(text=text, thought=part.thought))

        if changed:
            self.parts = rebuilt

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_content(self) -> Content:
        parts: list[ContentPart] = []
        inline_mode = self.tool_mode in toolcalls.MARKERS
        for part in self.parts:
            if isinstance(part, FunctionCallPart):
                part = copy.deepcopy(part)
                fc = part.function_call
                if not fc.args and fc.partial_args:
                    parsed = _try_parse_args(fc.partial_args)
                    if parsed is not None:
                        fc.args = parsed
                fc.index = None
                fc.partial_args = None
            elif isinstance(part, TextPart):
                part = copy.deepcopy(part)
                if inline_mode and parts and isinstance(parts[-1], FunctionCallPart):
                    part.text = part.text.lstrip()
                if not part.text and not part.thought:
                    continue
            else:
                part = copy.deepcopy(part)
            parts.append(part)

        if self._signatures and not any(p.thought_signatures for p in parts):
            parts.append(SignaturePart(thought_signatures=dict(self._signatures)))

        content = Content(
            role="model",
            parts=parts,
            usage=copy.copy(self._usage),
            model_version=self._model_version,
            finish_reason=self._finish_reason,
            chunk_count=self._chunk_count,
            first_chunk_time=self._first_chunk_time,
        )

        if self._thinking_start_time is not None:
            content.thinking_start_time = self._thinking_start_time
            content.thinking_duration_ms = self.thinking_duration_ms

        if self._request_start_time is not None:
            end = self._last_chunk_time if self._last_chunk_time is not None else _now_ms()
            content.response_duration_ms = end - self._request_start_time
        if self._first_chunk_time is not None and self._last_chunk_time is not None:
            content.stream_duration_ms = self._last_chunk_time - self._first_chunk_time

        return content

    def get_text(self, include_thoughts: bool = False) -> str:
        return "".join(
            p.text
            for p in self.parts
            if isinstance(p, TextPart) and (include_thoughts or not p.thought)
        )

    def get_thoughts(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart) and p.thought)

    def get_normal_text(self) -> str:
        return self.get_text(include_thoughts=False)

    def get_redacted_thinking(self) -> list[str]:
        return [p.data for p in self.parts if isinstance(p, RedactedThinkingPart)]

    def get_thought_signature(self, fmt: str | None = None) -> str | None:
        return self._signatures.get(fmt or self.provider_type)

    @property
    def thought_signatures(self) -> ThoughtSignatures:
        return dict(self._signatures)

    @property
    def usage(self) -> UsageMetadata | None:
        return self._usage

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def model_version(self) -> str | None:
        return self._model_version

    @property
    def is_complete(self) -> bool:
        return self._done

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    @property
    def thinking_duration_ms(self) -> float | None:
        """Frozen when normal text starts; still running for thought-only answers."""
        if self._thinking_start_time is None:
            return None
        if self._thinking_duration is not None:
            return self._thinking_duration
        return _now_ms() - self._thinking_start_time

    def get_stats(self) -> dict[str, Any]:
        return {
            "chunk_count": self._chunk_count,
            "first_chunk_time": self._first_chunk_time,
            "last_chunk_time": self._last_chunk_time,
            "request_start_time": self._request_start_time,
            "thinking_duration_ms": self.thinking_duration_ms,
            "has_received_normal_text": self.has_received_normal_text,
            "part_count": len(self.parts),
            "is_complete": self._done,
        }
