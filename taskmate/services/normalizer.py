"""Deduplication and validation of tool calls proposed by the model."""

import json
from collections.abc import Iterable
from typing import Any

from taskmate.models.messages import ToolCall, ToolResult


def unknown_tool_message(name: str) -> str:
    """Error text returned to the model for a tool that does not exist."""
    return (
        f"Error: Unknown tool: {name}. This tool does not exist. "
        "Please use only the tools that are available in the system."
    )


def canonical_arguments(arguments: dict[str, Any] | str) -> str:
    """Stable JSON form of tool arguments, used for signature comparison."""
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except ValueError:
            return arguments
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"), default=str)


def normalize_tool_calls(
    calls: Iterable[ToolCall], known_tool_names: set[str] | frozenset[str]
) -> tuple[list[ToolCall], list[ToolResult]]:
    """Split raw tool calls into valid calls and error results.

    Empty calls and duplicates (same id, or same name and arguments) are dropped
    without comment. Calls to unknown tools produce one error result each so the
    model can correct itself. Input order is preserved.

    Returns:
        (valid calls, error results for unknown tools)
    """
    seen_ids: set[str] = set()
    seen_signatures: set[str] = set()
    valid: list[ToolCall] = []
    errors: list[ToolResult] = []

    for call in calls:
        name = call.function.name if call.function else ""
        if not call.id or not name or not name.strip():
            continue

        if name not in known_tool_names:
            errors.append(ToolResult.for_call(call, unknown_tool_message(name)))
            continue

        if call.id in seen_ids:
            continue

        signature = f"{name}:{canonical_arguments(call.function.arguments)}"
        if signature in seen_signatures:
            continue

        seen_ids.add(call.id)
        seen_signatures.add(signature)
        valid.append(call)

    return valid, errors
