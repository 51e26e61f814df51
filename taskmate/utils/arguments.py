"""Decoding of model-supplied tool arguments."""

import json
from typing import Any

from taskmate.utils.errors import ToolArgumentsError


def parse_tool_arguments(arguments: Any, strict: bool = False) -> dict[str, Any]:
    """Turn raw tool-call arguments into a mapping.

    Args:
        arguments: A mapping, a JSON object string, or None
        strict: Raise ToolArgumentsError on malformed input instead of returning {}

    Returns:
        The decoded arguments
    """
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments

    if isinstance(arguments, str):
        try:
            decoded = json.loads(arguments)
        except ValueError as e:
            if strict:
                raise ToolArgumentsError(f"Tool arguments are not valid JSON: {e}") from e
            return {}
        if isinstance(decoded, dict):
            return decoded
        if strict:
            raise ToolArgumentsError(f"Tool arguments must be a JSON object, got {type(decoded).__name__}")
        return {}

    if strict:
        raise ToolArgumentsError(f"Tool arguments must be an object, got {type(arguments).__name__}")
    return {}
