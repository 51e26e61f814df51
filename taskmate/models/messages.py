"""Message and tool-call data models."""

from typing import Any, Literal

from pydantic import BaseModel, model_validator

CANCELLED_BY_USER = "Tool execution cancelled by user"
CANCELLED_PREFIX = "Tool execution cancelled:"


class ToolFunction(BaseModel):
    """The function part of a tool call."""

    name: str
    # Some backends send arguments as a JSON string instead of an object
    arguments: dict[str, Any] | str = {}


class ToolCall(BaseModel):
    """A tool invocation proposed by the model."""

    id: str
    function: ToolFunction
    parent_tool_call_id: str | None = None

    @property
    def name(self) -> str:
        """Name of the tool being called."""
        return self.function.name


class ToolResult(BaseModel):
    """Outcome of one tool call."""

    tool_call_id: str
    role: Literal["tool"] = "tool"
    name: str
    content: str
    parent_tool_call_id: str | None = None

    @property
    def is_cancellation(self) -> bool:
        """Whether this result marks a call the user declined or aborted."""
        return self.content == CANCELLED_BY_USER or self.content.startswith(CANCELLED_PREFIX)

    def to_message(self) -> "Message":
        """Convert to a tool-role history message."""
        return Message(role="tool", content=self.content or "", tool_call_id=self.tool_call_id, name=self.name)

    @classmethod
    def for_call(cls, tool_call: ToolCall, content: str) -> "ToolResult":
        """Build a result that links back to the given call."""
        return cls(
            tool_call_id=tool_call.id,
            name=tool_call.function.name,
            content=content,
            parent_tool_call_id=tool_call.parent_tool_call_id,
        )


class Message(BaseModel):
    """One turn in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    # User text before @routine expansion, kept for audit logging
    original_content: str | None = None

    @model_validator(mode="after")
    def check_assistant_not_empty(self) -> "Message":
        """Assistant turns need text or tool calls; model APIs reject empty ones."""
        if self.role == "assistant" and not self.content and not self.tool_calls:
            raise ValueError("Assistant message must have either content or tool_calls")
        return self


def tool_results_to_messages(results: list[ToolResult]) -> list[Message]:
    """Convert tool results to tool-role history messages, preserving order."""
    return [result.to_message() for result in results]
