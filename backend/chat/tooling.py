from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from chat.llm_client import ToolCall, ToolDefinition

DEFAULT_WRITE_TOOL_PREFIXES: tuple[str, ...] = (
    "create_",
    "update_",
    "delete_",
    "post_",
    "put_",
    "patch_",
)

APPROVAL_DENIED_MESSAGE = "Operation cancelled by user - approval denied"
TOOL_CANCELLED_MESSAGE = "Tool call not run - the turn was stopped"
TOOL_TRUNCATED_MESSAGE = "Tool call not run - the response hit the output token limit"

ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


def is_write_tool(
    tool_name: str,
    prefixes: Iterable[str] = DEFAULT_WRITE_TOOL_PREFIXES,
) -> bool:
    lowered = (tool_name or "").strip().lower()
    return any(lowered.startswith(prefix) for prefix in prefixes)


def partition_tool_calls(
    tool_calls: list[ToolCall],
    prefixes: Iterable[str] = DEFAULT_WRITE_TOOL_PREFIXES,
) -> tuple[list[ToolCall], list[ToolCall]]:
    """Split calls into (write, read) lists, each keeping issue order."""
    prefixes = tuple(prefixes)
    writes = [call for call in tool_calls if is_write_tool(call.name, prefixes)]
    reads = [call for call in tool_calls if not is_write_tool(call.name, prefixes)]
    return writes, reads


def _maybe_extract_nested_arguments(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None

    if not isinstance(parsed, dict):
        return None

    nested = parsed.get("arguments")
    if isinstance(nested, dict):
        return nested
    if isinstance(nested, str):
        try:
            nested_parsed = json.loads(nested)
        except json.JSONDecodeError:
            return None
        if isinstance(nested_parsed, dict):
            return nested_parsed
    return parsed


def normalize_tool_arguments(arguments: dict[str, Any] | None) -> dict[str, Any]:
    """Unwrap provider quirks such as ``{"arguments": "{...}"}`` envelopes.

    Arguments that never parsed stay under ``_raw`` so the tool can report a
    useful error instead of running with an empty input.
    """
    result = dict(arguments or {})

    nested = result.get("arguments")
    if len(result) == 1 and isinstance(nested, (dict, str)):
        unwrapped = (
            nested if isinstance(nested, dict) else _maybe_extract_nested_arguments(nested)
        )
        if isinstance(unwrapped, dict):
            result = dict(unwrapped)

    raw = result.get("_raw")
    if isinstance(raw, str) and raw.strip():
        recovered = _maybe_extract_nested_arguments(raw)
        if isinstance(recovered, dict):
            merged = {k: v for k, v in recovered.items() if k != "_raw"}
            merged.update({k: v for k, v in result.items() if k != "_raw"})
            result = merged
    return result


def serialize_tool_result(result: Any) -> Any:
    """Coerce a tool's return value into something JSON can store as-is."""
    if result is None or isinstance(result, (str, int, float, bool)):
        return result
    try:
        return json.loads(json.dumps(result, ensure_ascii=True, default=str))
    except (TypeError, ValueError):
        return str(result)


def tool_definitions_from_schema(tools: list[dict[str, Any]]) -> list[ToolDefinition]:
    definitions: list[ToolDefinition] = []
    for tool in tools:
        name = str(tool.get("name") or "").strip()
        if not name:
            continue
        definitions.append(
            ToolDefinition(
                name=name,
                description=str(tool.get("description") or ""),
                input_schema=dict(
                    tool.get("input_schema")
                    or tool.get("parameters")
                    or {"type": "object", "properties": {}}
                ),
            )
        )
    return definitions


class UnknownToolError(LookupError):
    pass


class ToolRegistry:
    """Name -> async handler map that doubles as the orchestrator's tool executor."""

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {}

    def register(
        self,
        definition: ToolDefinition,
        handler: Callable[[dict[str, Any]], Awaitable[Any]],
    ) -> None:
        if definition.name in self._handlers:
            raise ValueError(f"tool '{definition.name}' is already registered")
        self._definitions[definition.name] = definition
        self._handlers[definition.name] = handler

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    async def __call__(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise UnknownToolError(f"Unknown tool: {tool_name}")
        return await handler(arguments)
