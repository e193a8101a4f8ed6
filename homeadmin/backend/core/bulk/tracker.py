"""Progress tracking for bulk operations.

Every read-modify-write on the store goes through one asyncio lock, so a
snapshot never shows counts going backwards and a terminal status never
reverts.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from homeadmin.backend.core.bulk.errors import OperationFinished, OperationNotFound
from homeadmin.backend.core.bulk.store import (
    STATUS_PENDING,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    BulkOperation,
    OperationStore,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class ProgressDelta:
    """Counts accumulated by one batch."""

    processed: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)
    current_batch: Optional[int] = None


class ProgressTracker:
    """Owns all state transitions of stored bulk operations."""

    def __init__(self, store: OperationStore):
        self._store = store
        self._lock = asyncio.Lock()

    async def create(self, operation: BulkOperation) -> dict:
        async with self._lock:
            await self._store.insert(operation)
        logger.debug("Bulk operation %s created (%d items)", operation.id, operation.total)
        return operation.snapshot()

    async def get(self, operation_id: str) -> Optional[dict]:
        """Current snapshot, or None for an unknown id."""
        operation = await self._store.get(operation_id)
        return operation.snapshot() if operation else None

    async def get_operation(self, operation_id: str) -> Optional[BulkOperation]:
        return await self._store.get(operation_id)

    async def list(
        self,
        requested_by: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        op_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BulkOperation], int]:
        return await self._store.list(
            requested_by=requested_by,
            statuses=statuses,
            op_type=op_type,
            entity_type=entity_type,
            limit=limit,
            offset=offset,
        )

    async def mark_running(self, operation_id: str) -> bool:
        """Move a pending operation to running. Returns False if it already left pending."""
        async with self._lock:
            operation = await self._require(operation_id)
            if operation.status != STATUS_PENDING:
                return False
            operation.status = STATUS_RUNNING
            operation.start_time = utcnow()
            await self._store.save(operation)
            return True

    async def update(self, operation_id: str, delta: ProgressDelta) -> dict:
        """Apply one batch worth of progress."""
        if len(delta.errors) != delta.failed:
            raise ValueError("every failed item needs exactly one error entry")

        async with self._lock:
            operation = await self._require(operation_id)
            if operation.is_terminal:
                logger.warning(
                    "Ignoring progress update for finished operation %s (%s)",
                    operation_id, operation.status,
                )
                return operation.snapshot()

            done = operation.processed + operation.failed + delta.processed + delta.failed
            if done > operation.total:
                raise ValueError(
                    f"progress for {operation_id} would exceed total ({done} > {operation.total})"
                )

            operation.processed += delta.processed
            operation.failed += delta.failed
            operation.errors.extend(delta.errors)
            if delta.current_batch is not None:
                operation.current_batch = max(operation.current_batch, delta.current_batch)
            await self._store.save(operation)
            return operation.snapshot()

    async def request_cancel(self, operation_id: str) -> dict:
        """Flag an operation for cancellation at its next batch boundary.

        Raises:
            OperationNotFound: unknown id
            OperationFinished: operation already terminal
        """
        async with self._lock:
            operation = await self._require(operation_id)
            if operation.is_terminal:
                raise OperationFinished(operation_id)
            if not operation.cancel_requested:
                operation.cancel_requested = True
                await self._store.save(operation)
            return operation.snapshot()

    async def is_cancel_requested(self, operation_id: str) -> bool:
        operation = await self._store.get(operation_id)
        return bool(operation and operation.cancel_requested)

    async def finish(self, operation_id: str, status: str, error: Optional[str] = None) -> dict:
        """Move an operation into a terminal state. No-op if already terminal."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal status")

        async with self._lock:
            operation = await self._require(operation_id)
            if operation.is_terminal:
                logger.debug("Operation %s already finished as %s", operation_id, operation.status)
                return operation.snapshot()
            operation.status = status
            operation.error = error
            operation.end_time = utcnow()
            if operation.start_time is None:
                operation.start_time = operation.end_time
            await self._store.save(operation)
            return operation.snapshot()

    async def prune(self, cutoff: datetime) -> int:
        """Forget finished operations that ended before ``cutoff``."""
        async with self._lock:
            return await self._store.delete_finished_before(cutoff)

    async def _require(self, operation_id: str) -> BulkOperation:
        operation = await self._store.get(operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)
        return operation
