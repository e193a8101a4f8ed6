"""Batch executor: runs one bulk operation as one asyncio task.

Batches of a single operation run strictly in order. Between batches the
executor checks the cancellation flag and sleeps for the configured delay.
Per-item failures are recorded and processing continues; a systemic failure
or the operation timeout ends the run in the error state. Items applied
before a cancellation or failure are not rolled back.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from homeadmin.backend.core.bulk.audit import AuditLogger
from homeadmin.backend.core.bulk.errors import ItemError, OperationNotFound, SystemicError
from homeadmin.backend.core.bulk.handlers import Handler
from homeadmin.backend.core.bulk.registry import get_operation, severity_for
from homeadmin.backend.core.bulk.store import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_ERROR,
    BulkOperation,
)
from homeadmin.backend.core.bulk.tracker import ProgressDelta, ProgressTracker
from homeadmin.backend.core.entities import EntityRepository

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "operation timed out"
SHUTDOWN_MESSAGE = "interrupted by shutdown"


@dataclass(frozen=True)
class ExecutorConfig:
    batch_delay: float = 0.1
    timeout: float = 3600.0
    enforce_throughput: bool = False

    @classmethod
    def from_settings(cls, settings) -> "ExecutorConfig":
        return cls(
            batch_delay=settings.bulk_batch_delay_ms / 1000,
            timeout=settings.bulk_operation_timeout_seconds,
            enforce_throughput=settings.bulk_enforce_throughput,
        )


def make_batches(entity_ids: List[str], batch_size: int) -> List[List[str]]:
    """Split ids into consecutive fixed-size batches, preserving order."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    return [entity_ids[i:i + batch_size] for i in range(0, len(entity_ids), batch_size)]


class BatchExecutor:
    """Drives bulk operations through their batches."""

    def __init__(
        self,
        tracker: ProgressTracker,
        repository: EntityRepository,
        handlers: Dict[str, Handler],
        audit: AuditLogger,
        config: Optional[ExecutorConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._tracker = tracker
        self._repository = repository
        self._handlers = handlers
        self._audit = audit
        self._config = config or ExecutorConfig()
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> List[str]:
        return list(self._tasks)

    def start(self, operation_id: str) -> asyncio.Task:
        """Schedule an operation on the running event loop."""
        task = asyncio.create_task(self.execute(operation_id), name=f"bulk-{operation_id}")
        self._tasks[operation_id] = task
        task.add_done_callback(lambda t: self._on_done(operation_id, t))
        return task

    def _on_done(self, operation_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(operation_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Bulk operation %s task crashed: %s", operation_id, exc, exc_info=exc)

    async def wait(self, operation_id: str) -> None:
        """Wait for a scheduled operation to finish (no-op if not running)."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Cancel every running operation and wait for them to settle."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def execute(self, operation_id: str) -> dict:
        """Run an operation to a terminal state and return the final snapshot."""
        operation = await self._tracker.get_operation(operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)

        if not await self._tracker.mark_running(operation_id):
            logger.warning("Bulk operation %s is not pending, skipping execution", operation_id)
            return operation.snapshot()

        logger.info(
            "Bulk %s on %d %s(s) started by %s (operation %s)",
            operation.type, operation.total, operation.entity_type,
            operation.requested_by.username, operation_id,
        )
        await self._audit.record(
            operation_id, operation.requested_by, operation.type, operation.entity_type,
            {
                "entity_count": operation.total,
                "batch_size": operation.batch_size,
                "total_batches": operation.total_batches,
            },
            action=f"bulk_{operation.type}.start",
            severity=severity_for(operation.type, operation.total),
        )

        try:
            status, error = await asyncio.wait_for(
                self._run_batches(operation), timeout=self._config.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Bulk operation %s exceeded %.0fs timeout", operation_id, self._config.timeout)
            status, error = STATUS_ERROR, TIMEOUT_MESSAGE
        except SystemicError as e:
            logger.error("Bulk operation %s aborted: %s", operation_id, e)
            status, error = STATUS_ERROR, str(e)
        except asyncio.CancelledError:
            await self._tracker.finish(operation_id, STATUS_ERROR, SHUTDOWN_MESSAGE)
            raise
        except Exception as e:
            logger.exception("Bulk operation %s failed unexpectedly", operation_id)
            status, error = STATUS_ERROR, f"unexpected error: {e}"

        snapshot = await self._tracker.finish(operation_id, status, error)
        progress = snapshot["progress"]
        logger.info(
            "Bulk operation %s finished: %s (%d processed, %d failed, %d total)",
            operation_id, snapshot["status"], progress["processed"], progress["failed"], progress["total"],
        )
        await self._audit.record(
            operation_id, operation.requested_by, operation.type, operation.entity_type,
            {
                "status": snapshot["status"],
                "total": progress["total"],
                "processed": progress["processed"],
                "failed": progress["failed"],
                "error": snapshot["error"],
                "duration_seconds": snapshot["duration_seconds"],
            },
            action=f"bulk_{operation.type}.{snapshot['status']}",
            severity="high" if snapshot["status"] == STATUS_ERROR else severity_for(operation.type, progress["failed"]),
        )
        return snapshot

    async def _run_batches(self, operation: BulkOperation) -> Tuple[str, Optional[str]]:
        handler = self._handlers.get(operation.type)
        if handler is None:
            raise SystemicError(f"no handler registered for {operation.type}")

        batches = make_batches(operation.entity_ids, operation.batch_size)
        delay = self._batch_delay(operation)
        # Duplicate ids repeat the outcome of their first occurrence
        outcomes: Dict[str, Optional[dict]] = {}

        for index, batch in enumerate(batches, start=1):
            if await self._tracker.is_cancel_requested(operation.id):
                logger.info("Bulk operation %s cancelled before batch %d/%d", operation.id, index, len(batches))
                return STATUS_CANCELLED, None

            delta = ProgressDelta(current_batch=index)
            try:
                for entity_id in batch:
                    if entity_id in outcomes:
                        failure = outcomes[entity_id]
                    else:
                        failure = await self._apply(handler, operation, entity_id)
                        outcomes[entity_id] = failure
                    if failure is None:
                        delta.processed += 1
                    else:
                        delta.failed += 1
                        delta.errors.append(dict(failure))
            finally:
                # Items applied before an abort inside the batch still count
                await self._tracker.update(operation.id, delta)
            logger.debug(
                "Bulk operation %s batch %d/%d: %d ok, %d failed",
                operation.id, index, len(batches), delta.processed, delta.failed,
            )

            if index < len(batches) and delay > 0:
                await self._sleep(delay)

        return STATUS_COMPLETED, None

    async def _apply(self, handler: Handler, operation: BulkOperation, entity_id: str) -> Optional[dict]:
        """Apply the handler to one entity. Returns an error entry on item failure."""
        try:
            await handler(self._repository, operation.entity_type, entity_id, operation.data)
        except SystemicError:
            raise
        except ItemError as e:
            return {"entity_id": entity_id, "error_message": e.message, "error_code": e.code}
        except Exception as e:
            logger.warning("Bulk %s failed for %s %s: %s", operation.type, operation.entity_type, entity_id, e)
            return {"entity_id": entity_id, "error_message": str(e), "error_code": ItemError.UNKNOWN}
        return None

    def _batch_delay(self, operation: BulkOperation) -> float:
        delay = self._config.batch_delay
        if self._config.enforce_throughput:
            descriptor = get_operation(operation.type)
            if descriptor is not None:
                delay = max(delay, 60.0 * operation.batch_size / descriptor.items_per_minute)
        return delay
