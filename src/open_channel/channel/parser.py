"""Incremental decoding of streamed response bodies into JSON events.

Providers deliver the same logical event stream under different byte-level
framings (SSE ``data:`` lines, a JSON array written piecewise, or newline
delimited JSON), and network reads never line up with JSON value
boundaries.  ``parse_stream_buffer`` is called once per received chunk with
the previous call's ``remaining`` prefixed and returns whatever events are
complete so far.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, NamedTuple

_logger = logging.getLogger(__name__)

_SSE_MARKER = "data:"
_DONE = "[DONE]"
# Chunked transfer-encoding size lines leaking into the body
_HEX_LINE = re.compile(r"^[0-9a-fA-F]+$")
# A JSON array written piecewise may be split right before a separator.
_JSON_LINE_STARTS = ("{", "[", ",", "]")


class ParsedBuffer(NamedTuple):
    events: list[Any]
    remaining: str


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------

def _parse_sse(buffer: str, final: bool) -> ParsedBuffer:
    events: list[Any] = []
    lines = buffer.split("\n")
    # The last physical line may still be growing; hold it back untouched.
    tail = "" if final else lines.pop()

    current = ""
    for raw_line in lines:
        line = raw_line.rstrip("\r")
        if line.startswith(_SSE_MARKER):
            # A new event starts; an unparsable previous payload is dropped.
            current = line[len(_SSE_MARKER):].strip()
            if current == _DONE:
                current = ""
                continue
            if current:
                ok, value = _loads(current)
                if ok:
                    events.append(value)
                    current = ""
        elif current:
            stripped = line.strip()
            if not stripped or _HEX_LINE.match(stripped):
                continue
            current += line
            ok, value = _loads(current)
            if ok:
                events.append(value)
                current = ""

    if final:
        if current:
            ok, value = _loads(current)
            if ok:
                events.append(value)
            else:
                _logger.debug("Discarding unterminated SSE payload: %.80s", current)
        return ParsedBuffer(events, "")

    if current:
        return ParsedBuffer(events, f"{_SSE_MARKER} {current}\n{tail}")
    return ParsedBuffer(events, tail)


# ---------------------------------------------------------------------------
# Bare JSON framing
# ---------------------------------------------------------------------------

def _strip_array_punctuation(line: str) -> str:
    text = line.strip()
    if text.startswith("[") or text.startswith(","):
        text = text[1:]
    if text.endswith("]") or text.endswith(","):
        text = text[:-1]
    return text.strip()


def _parse_json_lines(buffer: str, final: bool) -> ParsedBuffer:
    events: list[Any] = []
    remaining = ""
    lines = buffer.split("\n")
    last = len(lines) - 1
    for i, raw_line in enumerate(lines):
        text = _strip_array_punctuation(raw_line)
        if not text:
            continue
        ok, value = _loads(text)
        if ok:
            events.append(value)
        elif i == last and not final:
            # Keep the fragment without its array/separator prefix so the next
            # buffer still starts with "{" and stays in this framing.
            head = raw_line.lstrip()
            if head.startswith("[") or head.startswith(","):
                head = head[1:]
            remaining = head
        else:
            _logger.debug("Skipping undecodable JSON line: %.80s", raw_line)
    return ParsedBuffer(events, remaining)


def parse_stream_buffer(buffer: str, final: bool = False) -> ParsedBuffer:
    """Decode every complete event in *buffer*.

    Framing is sniffed per call, first match wins:

    1. SSE: any ``data:`` marker in the buffer.
    2. Bare JSON lines / JSON array: the trimmed buffer starts with ``{``,
       ``[`` or the array punctuation left over from a previous split.
    3. Fallback: the whole trimmed buffer as one JSON value.

    With *final* set nothing is carried over; incomplete payloads are parsed
    as a last resort or dropped.
    """
    if _SSE_MARKER in buffer:
        return _parse_sse(buffer, final)

    trimmed = buffer.strip()
    if trimmed[:1] in _JSON_LINE_STARTS:
        return _parse_json_lines(buffer, final)

    ok, value = _loads(trimmed)
    if ok:
        return ParsedBuffer([value], "")
    return ParsedBuffer([], buffer)
