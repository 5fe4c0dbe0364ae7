"""Tool declarations sent with each request.

The concrete tools live elsewhere; this module only holds their JSON
declarations (``{"name", "description", "parameters"}``) and assembles the
per-request list from the built-in catalog and any MCP servers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from open_channel.config import SettingsSource

_logger = logging.getLogger(__name__)

Declaration = dict[str, Any]

# Tools that return images; useless when the channel cannot take them back.
MULTIMODAL_TOOL_NAMES = frozenset({
    "generate_image",
    "remove_background",
    "crop_image",
    "resize_image",
    "rotate_image",
})

_UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties")


class ToolSource(Protocol):
    def get_declarations_by(self, predicate: Callable[[str], bool]) -> list[Declaration]: ...

    def get_all_declarations(self) -> list[Declaration]: ...


@dataclass
class McpToolSet:
    """Tools exposed by one MCP server."""

    server_id: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    clean_schema: bool = False


class McpSource(Protocol):
    def get_all_tools(self) -> list[McpToolSet]: ...


class ToolCatalog:
    """In-memory catalog of built-in tool declarations."""

    def __init__(self, declarations: list[Declaration] | None = None) -> None:
        self._declarations: dict[str, Declaration] = {}
        for decl in declarations or []:
            self.register(decl)

    def register(self, declaration: Declaration) -> None:
        name = declaration.get("name")
        if not name:
            raise ValueError("tool declaration needs a name")
        self._declarations[name] = declaration

    def get(self, name: str) -> Declaration | None:
        return self._declarations.get(name)

    def tool_names(self) -> list[str]:
        return list(self._declarations)

    def get_declarations_by(self, predicate: Callable[[str], bool]) -> list[Declaration]:
        return [d for name, d in self._declarations.items() if predicate(name)]

    def get_all_declarations(self) -> list[Declaration]:
        return list(self._declarations.values())


def clean_json_schema(schema: Any) -> Any:
    """Drop ``$schema`` and ``additionalProperties`` at every nesting level."""
    if isinstance(schema, list):
        return [clean_json_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    return {
        key: clean_json_schema(value)
        for key, value in schema.items()
        if key not in _UNSUPPORTED_SCHEMA_KEYS
    }


def mcp_tool_name(server_id: str, tool_name: str) -> str:
    # Double underscores: some providers reject colons in function names.
    return f"mcp__{server_id}__{tool_name}"


def build_tool_declarations(
    tools: ToolSource | None,
    *,
    settings: SettingsSource | None = None,
    mcp: McpSource | None = None,
    multimodal_enabled: bool = False,
    channel_type: str | None = None,
    tool_mode: str = "function_call",
) -> list[Declaration] | None:
    """Assemble the declarations for one request, or None when there are none.

    Built-in tools are filtered by ``settings.is_tool_enabled`` (all of them
    when no settings are given).  Image-returning tools are dropped unless
    multimodal tools are enabled, and always for OpenAI native function
    calling, which cannot carry images in tool results.
    """
    result: list[Declaration] = []

    if tools is not None:
        if settings is not None:
            builtin = tools.get_declarations_by(settings.is_tool_enabled)
        else:
            builtin = tools.get_all_declarations()

        exclude_multimodal = not multimodal_enabled or (
            channel_type == "openai" and tool_mode == "function_call"
        )
        for decl in builtin:
            if exclude_multimodal and decl.get("name") in MULTIMODAL_TOOL_NAMES:
                continue
            cleaned = dict(decl)
            cleaned["parameters"] = clean_json_schema(decl.get("parameters"))
            result.append(cleaned)

    if mcp is not None:
        for tool_set in mcp.get_all_tools():
            for tool in tool_set.tools:
                schema = tool.get("inputSchema") or {"type": "object", "properties": {}}
                if tool_set.clean_schema:
                    schema = clean_json_schema(schema)
                result.append({
                    "name": mcp_tool_name(tool_set.server_id, tool["name"]),
                    "description": tool.get("description") or f"MCP tool: {tool['name']}",
                    "parameters": schema,
                })

    _logger.debug("Declaring %d tools", len(result))
    return result or None
