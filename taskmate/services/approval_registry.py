"""Approval registry.

Serializes human approval decisions for the main conversation loop and any
nested sub-agent. Exactly one request is active (shown to the user) at a time;
the rest wait in arrival order.
"""

import asyncio
from collections import deque
from collections.abc import Callable

from taskmate.models.approval import ApprovalMetadata, PendingApproval
from taskmate.models.messages import ToolCall
from taskmate.utils.errors import ApprovalCancelledError
from taskmate.utils.logging import get_logger

logger = get_logger(__name__)

ApprovalNeededCallback = Callable[[PendingApproval], None]


class ApprovalRegistry:
    """Single-slot FIFO broker for tool approval requests."""

    def __init__(self):
        self._queue: deque[PendingApproval] = deque()
        self._active: PendingApproval | None = None
        self._on_approval_needed: ApprovalNeededCallback | None = None
        self.stale_resolutions = 0

    async def request(self, tool_call: ToolCall, metadata: ApprovalMetadata | None = None) -> bool:
        """Ask the user to approve a tool call.

        Waits without timeout until the UI resolves the request. Raises
        ApprovalCancelledError (or the error given to reject_with_error) if the
        request is torn down instead.
        """
        loop = asyncio.get_running_loop()
        approval = PendingApproval(
            tool_call=tool_call,
            metadata=metadata or ApprovalMetadata(),
            future=loop.create_future(),
        )
        self._queue.append(approval)
        logger.debug(
            f"Approval requested for {tool_call.function.name} ({tool_call.id}), "
            f"chain={approval.metadata.chain}, queued={len(self._queue)}"
        )

        if len(self._queue) == 1:
            self._activate_next()

        try:
            return await approval.future
        except asyncio.CancelledError:
            self._discard(approval)
            raise

    def get_pending(self) -> PendingApproval | None:
        """The approval currently shown to the user, if any."""
        return self._active

    @property
    def queued(self) -> int:
        """Number of requests waiting, including the active one."""
        return len(self._queue)

    def resolve(self, tool_call_id: str, approved: bool) -> None:
        """Record the user's decision for the active approval."""
        approval = self._take_active(tool_call_id, "resolve")
        if approval is None:
            return
        approval.resolve(approved)
        self._activate_next()

    def reject_with_error(self, tool_call_id: str, error: BaseException) -> None:
        """Fail the active approval, e.g. because its conversation was torn down."""
        approval = self._take_active(tool_call_id, "reject")
        if approval is None:
            return
        approval.reject(error)
        self._activate_next()

    def cancel_all(self) -> None:
        """Reject every queued approval, active one included."""
        if self._queue:
            logger.info(f"Cancelling {len(self._queue)} pending approval(s)")
        while self._queue:
            self._queue.popleft().reject(ApprovalCancelledError())
        self._active = None

    def on_approval_needed(self, callback: ApprovalNeededCallback) -> None:
        """Register the UI notification sink. The last registration wins."""
        self._on_approval_needed = callback

    def clear_approval_needed_callback(self) -> None:
        self._on_approval_needed = None

    def _take_active(self, tool_call_id: str, action: str) -> PendingApproval | None:
        active = self._active
        if active is None or active.tool_call.id != tool_call_id:
            self.stale_resolutions += 1
            logger.warning(f"Attempted to {action} approval for {tool_call_id} but it's not pending")
            return None
        self._queue.popleft()
        self._active = None
        return active

    def _discard(self, approval: PendingApproval) -> None:
        """Drop a request whose waiter was cancelled."""
        if approval not in self._queue:
            return
        self._queue.remove(approval)
        if self._active is approval:
            self._active = None
            self._activate_next()

    def _activate_next(self) -> None:
        if not self._queue:
            self._active = None
            return

        self._active = self._queue[0]
        if self._on_approval_needed is not None:
            try:
                self._on_approval_needed(self._active)
            except Exception as e:
                logger.error(f"Approval callback failed: {e}", exc_info=True)
                self.reject_with_error(self._active.tool_call.id, e)
