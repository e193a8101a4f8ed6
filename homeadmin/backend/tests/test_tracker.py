"""Tests for homeadmin.backend.core.bulk.tracker: progress bookkeeping."""
from datetime import timedelta

import pytest

from homeadmin.backend.core.bulk.errors import OperationFinished, OperationNotFound
from homeadmin.backend.core.bulk.store import Actor, BulkOperation, InMemoryOperationStore, utcnow
from homeadmin.backend.core.bulk.tracker import ProgressDelta, ProgressTracker


def _operation(op_id="op1", ids=("a", "b", "c", "d"), batch_size=2) -> BulkOperation:
    return BulkOperation(
        id=op_id,
        type="activate",
        entity_type="user",
        entity_ids=list(ids),
        requested_by=Actor(id="1", username="alice"),
        batch_size=batch_size,
        total_batches=(len(ids) + batch_size - 1) // batch_size,
    )


@pytest.fixture()
def tracker():
    return ProgressTracker(InMemoryOperationStore())


class TestLifecycle:
    """State transitions."""

    @pytest.mark.asyncio
    async def test_create_is_pending(self, tracker):
        snapshot = await tracker.create(_operation())
        assert snapshot["status"] == "pending"
        assert snapshot["progress"] == {"total": 4, "processed": 0, "failed": 0, "percentage": 0}

    @pytest.mark.asyncio
    async def test_get_unknown(self, tracker):
        assert await tracker.get("nope") is None

    @pytest.mark.asyncio
    async def test_mark_running_once(self, tracker):
        await tracker.create(_operation())
        assert await tracker.mark_running("op1") is True
        assert await tracker.mark_running("op1") is False
        snapshot = await tracker.get("op1")
        assert snapshot["status"] == "running"
        assert snapshot["start_time"] is not None

    @pytest.mark.asyncio
    async def test_finish_sets_end_time(self, tracker):
        await tracker.create(_operation())
        await tracker.mark_running("op1")
        snapshot = await tracker.finish("op1", "completed")
        assert snapshot["status"] == "completed"
        assert snapshot["end_time"] >= snapshot["start_time"]

    @pytest.mark.asyncio
    async def test_terminal_status_never_reverts(self, tracker):
        await tracker.create(_operation())
        await tracker.finish("op1", "cancelled")
        snapshot = await tracker.finish("op1", "error", "late failure")
        assert snapshot["status"] == "cancelled"
        assert snapshot["error"] is None

    @pytest.mark.asyncio
    async def test_finish_rejects_non_terminal_status(self, tracker):
        await tracker.create(_operation())
        with pytest.raises(ValueError):
            await tracker.finish("op1", "running")


class TestUpdate:
    """Progress updates."""

    @pytest.mark.asyncio
    async def test_counts_accumulate(self, tracker):
        await tracker.create(_operation())
        await tracker.mark_running("op1")
        await tracker.update("op1", ProgressDelta(processed=2, current_batch=1))
        error = {"entity_id": "d", "error_message": "not found", "error_code": "NOT_FOUND"}
        snapshot = await tracker.update("op1", ProgressDelta(processed=1, failed=1, errors=[error], current_batch=2))
        assert snapshot["progress"]["processed"] == 3
        assert snapshot["progress"]["failed"] == 1
        assert snapshot["progress"]["percentage"] == 100
        assert snapshot["errors"] == [error]
        assert snapshot["current_batch"] == 2

    @pytest.mark.asyncio
    async def test_errors_must_match_failures(self, tracker):
        await tracker.create(_operation())
        with pytest.raises(ValueError):
            await tracker.update("op1", ProgressDelta(failed=1))

    @pytest.mark.asyncio
    async def test_cannot_exceed_total(self, tracker):
        await tracker.create(_operation())
        with pytest.raises(ValueError):
            await tracker.update("op1", ProgressDelta(processed=5))

    @pytest.mark.asyncio
    async def test_update_after_finish_ignored(self, tracker):
        await tracker.create(_operation())
        await tracker.finish("op1", "cancelled")
        snapshot = await tracker.update("op1", ProgressDelta(processed=1))
        assert snapshot["progress"]["processed"] == 0

    @pytest.mark.asyncio
    async def test_update_unknown(self, tracker):
        with pytest.raises(OperationNotFound):
            await tracker.update("ghost", ProgressDelta(processed=1))

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, tracker):
        await tracker.create(_operation())
        snapshot = await tracker.get("op1")
        snapshot["progress"]["processed"] = 99
        snapshot["errors"].append({"entity_id": "x"})
        fresh = await tracker.get("op1")
        assert fresh["progress"]["processed"] == 0
        assert fresh["errors"] == []


class TestCancel:
    """Cancellation requests."""

    @pytest.mark.asyncio
    async def test_request_cancel_sets_flag(self, tracker):
        await tracker.create(_operation())
        snapshot = await tracker.request_cancel("op1")
        assert snapshot["cancel_requested"] is True
        assert await tracker.is_cancel_requested("op1") is True

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, tracker):
        with pytest.raises(OperationNotFound):
            await tracker.request_cancel("ghost")

    @pytest.mark.asyncio
    async def test_cancel_finished(self, tracker):
        await tracker.create(_operation())
        await tracker.finish("op1", "completed")
        with pytest.raises(OperationFinished):
            await tracker.request_cancel("op1")


class TestListing:
    """Listing and pruning."""

    @pytest.mark.asyncio
    async def test_list_filters(self, tracker):
        await tracker.create(_operation("op1"))
        other = _operation("op2")
        other.requested_by = Actor(id="2", username="bob")
        await tracker.create(other)
        await tracker.finish("op2", "completed")

        mine, total = await tracker.list(requested_by="1")
        assert total == 1
        assert mine[0].id == "op1"

        done, _ = await tracker.list(statuses=["completed"])
        assert [op.id for op in done] == ["op2"]

    @pytest.mark.asyncio
    async def test_prune_only_finished(self, tracker):
        await tracker.create(_operation("op1"))
        await tracker.create(_operation("op2"))
        await tracker.finish("op2", "completed")

        removed = await tracker.prune(utcnow() + timedelta(seconds=1))
        assert removed == 1
        assert await tracker.get("op1") is not None
        assert await tracker.get("op2") is None
