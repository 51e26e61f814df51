"""Conversation loop state and outcome models."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from taskmate.models.messages import Message, ToolCall


class DevelopmentMode(StrEnum):
    """How tool approvals are handled."""

    NORMAL = "normal"
    AUTO_ACCEPT = "auto-accept"


class TerminalReason(StrEnum):
    """Why a user turn stopped."""

    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    APPROVAL_REQUIRED = "approval-required"


@dataclass(frozen=True)
class LoopState:
    """Snapshot of the conversation loop at the start of one iteration."""

    history: tuple[Message, ...]
    iteration: int = 0

    def advance(self, history: list[Message]) -> "LoopState":
        """Next iteration with a new history list."""
        return LoopState(history=tuple(history), iteration=self.iteration + 1)


@dataclass
class TurnOutcome:
    """Terminal state reached by one user turn."""

    reason: TerminalReason
    messages: list[Message]
    error: str | None = None
    iterations: int = 0


DisplayKind = Literal["user", "assistant", "tool_result", "error", "info"]


@dataclass
class DisplayEntry:
    """Renderable item pushed to the display queue."""

    kind: DisplayKind
    text: str
    tool_call: ToolCall | None = None
    extra: dict[str, str] = field(default_factory=dict)
