"""Ordered display queue the orchestrator publishes renderable entries to."""

from collections.abc import Callable

from taskmate.models.conversation import DisplayEntry, DisplayKind
from taskmate.models.messages import ToolCall
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

DisplaySubscriber = Callable[[DisplayEntry], None]


class DisplayQueue:
    """Append-only event bus between the conversation loop and the UI.

    Entries are kept in push order and delivered synchronously to every
    subscriber. A failing subscriber is logged and skipped.
    """

    def __init__(self):
        self._entries: list[DisplayEntry] = []
        self._subscribers: list[DisplaySubscriber] = []

    @property
    def entries(self) -> list[DisplayEntry]:
        return list(self._entries)

    def subscribe(self, subscriber: DisplaySubscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def push(
        self,
        kind: DisplayKind,
        text: str,
        tool_call: ToolCall | None = None,
        **extra: str,
    ) -> DisplayEntry:
        entry = DisplayEntry(kind=kind, text=text, tool_call=tool_call, extra=extra)
        self._entries.append(entry)
        for subscriber in list(self._subscribers):
            try:
                subscriber(entry)
            except Exception as e:
                logger.warning(f"Display subscriber failed: {e}", exc_info=True)
        return entry

    def clear(self) -> None:
        self._entries = []
