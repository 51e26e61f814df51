"""Per-call progress listeners for long-running tools."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from taskmate.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ToolProgressUpdate:
    """Intermediate update emitted by a tool while it runs."""

    type: Literal["tool_call", "tool_result", "status", "custom"]
    data: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


ProgressListener = Callable[[ToolProgressUpdate], None]


class ProgressRegistry:
    """Routes progress updates to the listener registered for a tool call."""

    def __init__(self):
        self._listeners: dict[str, ProgressListener] = {}

    def register(self, tool_call_id: str, listener: ProgressListener) -> None:
        self._listeners[tool_call_id] = listener

    def unregister(self, tool_call_id: str) -> None:
        self._listeners.pop(tool_call_id, None)

    def report_progress(self, tool_call_id: str, update: ToolProgressUpdate) -> None:
        """Forward an update; a missing listener is not an error."""
        listener = self._listeners.get(tool_call_id)
        if listener is None:
            return
        try:
            listener(update)
        except Exception as e:
            logger.warning(f"Progress listener for {tool_call_id} failed: {e}")

    def get_progress_reporter(self, tool_call_id: str) -> ProgressListener | None:
        return self._listeners.get(tool_call_id)
