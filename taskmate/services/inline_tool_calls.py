"""Parser for tool calls embedded in plain model text.

Models without native function calling are prompted to emit::

    <tool_call>
    {"name": "new_task", "arguments": {"description": "Fix login"}}
    </tool_call>
"""

import json
import re
from dataclasses import dataclass, field

from cuid2 import cuid_wrapper

from taskmate.models.messages import ToolCall, ToolFunction
from taskmate.services.tool_executor import MALFORMED_TOOL_CALL

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"

TOOL_CALL_EXAMPLES = """Expected format:
<tool_call>
{"name": "list_tasks", "arguments": {}}
</tool_call>

<tool_call>
{"name": "new_task", "arguments": {"description": "Fix login bug", "priority": "high"}}
</tool_call>"""

_BLOCK_PATTERN = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)

generate_cuid = cuid_wrapper()


@dataclass
class InlineParseResult:
    """Outcome of scanning model text for inline tool calls."""

    success: bool
    tool_calls: list[ToolCall] = field(default_factory=list)
    cleaned_content: str = ""
    error: str | None = None
    examples: str | None = None


def new_call_id() -> str:
    return f"call_{generate_cuid()}"


def _failure(error: str, content: str) -> InlineParseResult:
    return InlineParseResult(
        success=False,
        cleaned_content=content.strip(),
        error=error,
        examples=TOOL_CALL_EXAMPLES,
    )


def parse_tool_calls(text: str) -> InlineParseResult:
    """Extract ``<tool_call>`` blocks from model text.

    Args:
        text: Raw assistant content

    Returns:
        Parsed calls plus the text with every block removed. Structural
        problems yield success=False with an error and a format example.
    """
    if not text or OPEN_TAG not in text:
        return InlineParseResult(success=True, cleaned_content=(text or "").strip())

    tool_calls: list[ToolCall] = []
    for index, match in enumerate(_BLOCK_PATTERN.finditer(text), start=1):
        body = match.group(1).strip()
        try:
            payload = json.loads(body)
        except ValueError as e:
            return _failure(f"Tool call #{index} is not valid JSON: {e}", text)

        if not isinstance(payload, dict):
            return _failure(f"Tool call #{index} must be a JSON object with 'name' and 'arguments'.", text)

        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            return _failure(f"Tool call #{index} is missing a 'name'.", text)

        arguments = payload.get("arguments", {})
        if arguments is None:
            arguments = {}
        if isinstance(arguments, dict):
            function = ToolFunction(name=name.strip(), arguments=arguments)
        else:
            function = ToolFunction(
                name=MALFORMED_TOOL_CALL,
                arguments={
                    "error": (
                        f"Arguments for '{name.strip()}' must be a JSON object, "
                        f"got {type(arguments).__name__}."
                    ),
                    "tool": name.strip(),
                },
            )
        tool_calls.append(ToolCall(id=new_call_id(), function=function))

    cleaned = _BLOCK_PATTERN.sub("", text)
    if OPEN_TAG in cleaned:
        return _failure(f"Found {OPEN_TAG} without a matching {CLOSE_TAG}.", text)
    if CLOSE_TAG in cleaned:
        return _failure(f"Found {CLOSE_TAG} without a matching {OPEN_TAG}.", text)

    return InlineParseResult(success=True, tool_calls=tool_calls, cleaned_content=cleaned.strip())
