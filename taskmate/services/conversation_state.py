"""Auxiliary per-session conversation tracking."""

import time
from collections import Counter
from dataclasses import dataclass, field

from taskmate.models.messages import Message
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConversationState:
    """Summary of what happened in the current session."""

    first_message: str
    started_at: float = field(default_factory=time.time)
    assistant_turns: int = 0
    tools_used: Counter[str] = field(default_factory=Counter)
    last_assistant_content: str = ""


class ConversationStateTracker:
    """Tracks session-level facts alongside the message history."""

    def __init__(self):
        self.state: ConversationState | None = None

    @property
    def initialized(self) -> bool:
        return self.state is not None

    @property
    def assistant_turns(self) -> int:
        return self.state.assistant_turns if self.state else 0

    @property
    def tools_used(self) -> dict[str, int]:
        return dict(self.state.tools_used) if self.state else {}

    def initialize_state(self, first_message: str) -> ConversationState:
        self.state = ConversationState(first_message=first_message)
        logger.debug(f"Conversation state initialized: {first_message[:60]!r}")
        return self.state

    def update_assistant_message(self, message: Message) -> None:
        if self.state is None:
            return
        self.state.assistant_turns += 1
        if message.content:
            self.state.last_assistant_content = message.content
        for tool_call in message.tool_calls or []:
            self.state.tools_used[tool_call.function.name] += 1

    def reset(self) -> None:
        self.state = None
