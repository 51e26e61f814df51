"""Tests for the approval registry."""

import asyncio
from unittest.mock import Mock

import pytest
from conftest import call

from taskmate.models.approval import ApprovalMetadata
from taskmate.services.approval_registry import ApprovalRegistry
from taskmate.utils.errors import ApprovalCancelledError


async def _settle() -> None:
    """Let pending tasks run up to their next await."""
    for _ in range(3):
        await asyncio.sleep(0)


class TestApprovalRegistry:
    """Tests for request/resolve ordering and teardown."""

    @pytest.mark.asyncio
    async def test_resolve_approves_active_request(self):
        """Test that resolving the active request completes its wait."""
        registry = ApprovalRegistry()
        request = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        await _settle()

        assert registry.get_pending().tool_call.id == "a"
        registry.resolve("a", True)

        assert await request is True
        assert registry.get_pending() is None

    @pytest.mark.asyncio
    async def test_requests_served_in_arrival_order(self):
        """Test that only one request is active and the rest queue FIFO."""
        registry = ApprovalRegistry()
        first = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        await _settle()
        second = asyncio.create_task(registry.request(call("new_task", call_id="b")))
        await _settle()

        assert registry.queued == 2
        assert registry.get_pending().tool_call.id == "a"

        registry.resolve("a", False)
        assert await first is False
        assert registry.get_pending().tool_call.id == "b"

        registry.resolve("b", True)
        assert await second is True
        assert registry.queued == 0

    @pytest.mark.asyncio
    async def test_callback_notified_for_each_activation(self):
        """Test that the UI callback sees every request when it becomes active."""
        registry = ApprovalRegistry()
        seen: list[str] = []
        registry.on_approval_needed(lambda pending: seen.append(pending.tool_call.id))

        first = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        second = asyncio.create_task(registry.request(call("new_task", call_id="b")))
        await _settle()
        assert seen == ["a"]

        registry.resolve("a", True)
        await first
        assert seen == ["a", "b"]

        registry.resolve("b", True)
        await second

    @pytest.mark.asyncio
    async def test_metadata_reaches_callback(self):
        """Test that sub-agent metadata is passed through unchanged."""
        registry = ApprovalRegistry()
        callback = Mock()
        registry.on_approval_needed(callback)
        metadata = ApprovalMetadata(source="subagent", subagent_type="explore_subagent", chain=["main", "explore_subagent"])

        request = asyncio.create_task(registry.request(call("new_task", call_id="a"), metadata))
        await _settle()

        pending = callback.call_args.args[0]
        assert pending.metadata.chain == ["main", "explore_subagent"]
        registry.resolve("a", True)
        await request

    @pytest.mark.asyncio
    async def test_stale_resolution_is_ignored(self):
        """Test that resolving a non-active id is a no-op that is counted."""
        registry = ApprovalRegistry()
        request = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        await _settle()

        registry.resolve("zzz", True)

        assert registry.stale_resolutions == 1
        assert registry.get_pending().tool_call.id == "a"
        assert not request.done()

        registry.resolve("a", True)
        assert await request is True

        registry.resolve("a", True)
        assert registry.stale_resolutions == 2

    @pytest.mark.asyncio
    async def test_cancel_all_rejects_every_request(self):
        """Test that cancel_all fails the active and the queued requests."""
        registry = ApprovalRegistry()
        first = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        second = asyncio.create_task(registry.request(call("new_task", call_id="b")))
        await _settle()

        registry.cancel_all()

        with pytest.raises(ApprovalCancelledError):
            await first
        with pytest.raises(ApprovalCancelledError):
            await second
        assert registry.get_pending() is None
        assert registry.queued == 0

    @pytest.mark.asyncio
    async def test_reject_with_error(self):
        """Test that reject_with_error raises the given error in the waiter."""
        registry = ApprovalRegistry()
        request = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        await _settle()

        registry.reject_with_error("a", RuntimeError("conversation closed"))

        with pytest.raises(RuntimeError, match="conversation closed"):
            await request

    @pytest.mark.asyncio
    async def test_failing_callback_rejects_request(self):
        """Test that a broken UI callback does not leave the request hanging."""
        registry = ApprovalRegistry()
        registry.on_approval_needed(Mock(side_effect=ValueError("ui crashed")))

        with pytest.raises(ValueError, match="ui crashed"):
            await registry.request(call("new_task", call_id="a"))
        assert registry.get_pending() is None

    @pytest.mark.asyncio
    async def test_cancelled_waiter_frees_slot(self):
        """Test that cancelling a waiting task activates the next request."""
        registry = ApprovalRegistry()
        first = asyncio.create_task(registry.request(call("new_task", call_id="a")))
        second = asyncio.create_task(registry.request(call("new_task", call_id="b")))
        await _settle()

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        assert registry.get_pending().tool_call.id == "b"
        registry.resolve("b", True)
        assert await second is True
