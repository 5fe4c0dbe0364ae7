"""Inline tool-call markup for channels that do not use native function calling.

Two conventions are supported:

``json``::

    <<<TOOL_CALL>>>
    {"tool": "read_file", "parameters": {"path": "a.txt"}}
    <<<END_TOOL_CALL>>>

``xml``::

    <tool_use>
    <name>read_file</name>
    <args>{"path": "a.txt"}</args>
    </tool_use>
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any

from open_channel.types import FunctionCall

_logger = logging.getLogger(__name__)

JSON_TOOL_START = "<<<TOOL_CALL>>>"
JSON_TOOL_END = "<<<END_TOOL_CALL>>>"
XML_TOOL_START = "<tool_use>"
XML_TOOL_END = "</tool_use>"

MARKERS: dict[str, tuple[str, str]] = {
    "json": (JSON_TOOL_START, JSON_TOOL_END),
    "xml": (XML_TOOL_START, XML_TOOL_END),
}

_XML_BLOCK = re.compile(r"<tool_use>(.*?)</tool_use>", re.DOTALL)
_XML_NAME = re.compile(r"<name>\s*(.*?)\s*</name>", re.DOTALL)
_XML_ARGS = re.compile(r"<args>(.*?)</args>", re.DOTALL)


def generate_call_id() -> str:
    """Return a fresh id for a tool call that arrived without one."""
    return f"fc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def _strip_fences(raw: str) -> str:
    cleaned = raw.strip()
    for prefix in ("```json", "```"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _loads_lenient(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        # Single repair pass: strip markdown fences
        return json.loads(_strip_fences(raw))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_json_tool_call(payload: str) -> FunctionCall | None:
    """Parse the text between the JSON markers into a call, or None."""
    try:
        data = _loads_lenient(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    name = data.get("tool")
    params = data.get("parameters")
    if not name or not isinstance(name, str) or not isinstance(params, dict):
        return None
    return FunctionCall(name=name, args=params, id=generate_call_id())


def parse_xml_tool_calls(text: str) -> list[FunctionCall]:
    """Extract every well-formed ``<tool_use>`` block in *text*."""
    calls: list[FunctionCall] = []
    for block in _XML_BLOCK.findall(text):
        name_match = _XML_NAME.search(block)
        if not name_match or not name_match.group(1):
            continue
        args: Any = {}
        args_match = _XML_ARGS.search(block)
        if args_match and args_match.group(1).strip():
            try:
                args = _loads_lenient(args_match.group(1))
            except json.JSONDecodeError:
                _logger.debug("Unparsable <args> in tool_use block: %.80s", block)
                continue
        if not isinstance(args, dict):
            continue
        calls.append(
            FunctionCall(name=name_match.group(1), args=args, id=generate_call_id())
        )
    return calls


def parse_markup(mode: str, block: str) -> list[FunctionCall]:
    """Parse one complete delimited block (markers included) for *mode*."""
    if mode == "json":
        start, end = MARKERS["json"]
        call = parse_json_tool_call(block[len(start):len(block) - len(end)].strip())
        return [call] if call else []
    if mode == "xml":
        return parse_xml_tool_calls(block)
    return []


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------

def _describe_tool(decl: dict[str, Any]) -> str:
    lines = [f"## {decl.get('name', '')}"]
    if decl.get("description"):
        lines.append(decl["description"])
    params = decl.get("parameters") or {}
    props = params.get("properties") or {}
    required = set(params.get("required") or [])
    if props:
        lines.append("Parameters:")
        for pname, pschema in props.items():
            flag = " (required)" if pname in required else ""
            desc = pschema.get("description", "")
            lines.append(f"- {pname}: {pschema.get('type', 'any')}{flag} {desc}".rstrip())
    return "\n".join(lines)


def render_tool_prompt(declarations: list[dict[str, Any]], mode: str) -> str:
    """Render the system-prompt section that teaches the inline convention."""
    if not declarations or mode not in MARKERS:
        return ""
    tools = "\n\n".join(_describe_tool(d) for d in declarations)
    if mode == "json":
        usage = (
            "To call a tool, output exactly:\n"
            f"{JSON_TOOL_START}\n"
            '{"tool": "<tool name>", "parameters": {<arguments>}}\n'
            f"{JSON_TOOL_END}"
        )
    else:
        usage = (
            "To call a tool, output exactly:\n"
            f"{XML_TOOL_START}\n"
            "<name>tool name</name>\n"
            "<args>{JSON object of arguments}</args>\n"
            f"{XML_TOOL_END}"
        )
    return f"# Tools\n\n{usage}\n\nYou may call several tools in one answer.\n\n{tools}"
