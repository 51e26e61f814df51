"""Approval request models."""

import asyncio
from dataclasses import dataclass, field
from typing import Literal

from taskmate.models.messages import ToolCall


@dataclass
class ApprovalMetadata:
    """Where an approval request comes from."""

    source: Literal["main", "subagent"] = "main"
    subagent_type: str | None = None
    # Originating agents, outermost first, e.g. ["main", "explore_subagent"]
    chain: list[str] = field(default_factory=lambda: ["main"])


@dataclass
class PendingApproval:
    """An approval request waiting for a user decision."""

    tool_call: ToolCall
    metadata: ApprovalMetadata
    future: asyncio.Future[bool]

    def resolve(self, approved: bool) -> None:
        if not self.future.done():
            self.future.set_result(approved)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)
