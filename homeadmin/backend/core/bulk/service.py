"""Bulk operation service.

Wires the validator, tracker, executor and audit logger together. One
instance lives on the FastAPI application state; it starts with in-memory
components and is rebuilt on top of PostgreSQL when the database connects.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from homeadmin.backend.core.bulk.analysis import error_analysis, safety_metrics
from homeadmin.backend.core.bulk.audit import AuditLogger, AuditSink, DatabaseAuditSink, MemoryAuditSink
from homeadmin.backend.core.bulk.errors import (
    BulkValidationError,
    CancelNotAllowed,
    OperationNotFound,
    QuotaExceeded,
)
from homeadmin.backend.core.bulk.executor import BatchExecutor, ExecutorConfig
from homeadmin.backend.core.bulk.handlers import build_handler_map
from homeadmin.backend.core.bulk.quota import ItemQuota
from homeadmin.backend.core.bulk.store import (
    ACTIVE_STATUSES,
    Actor,
    BulkOperation,
    InMemoryOperationStore,
    OperationStore,
    PostgresOperationStore,
    utcnow,
)
from homeadmin.backend.core.bulk.tracker import ProgressTracker
from homeadmin.backend.core.bulk.validator import BulkLimits, BulkValidator, ValidationResult
from homeadmin.backend.core.entities import EntityRepository, InMemoryEntityRepository, PostgresEntityRepository

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60

# Upper bound on records scanned for metrics
_METRICS_SCAN_LIMIT = 1000


class BulkOperationService:
    """Entry point for everything the HTTP layer does with bulk operations."""

    def __init__(
        self,
        settings,
        repository: EntityRepository,
        store: OperationStore,
        audit: AuditLogger,
        sleep: Callable[[float], Any] = asyncio.sleep,
        quota: Optional[ItemQuota] = None,
    ):
        self._settings = settings
        self._quota = quota or ItemQuota()
        self._repository = repository
        self._tracker = ProgressTracker(store)
        self._validator = BulkValidator(repository, BulkLimits.from_settings(settings))
        self._audit = audit
        self._executor = BatchExecutor(
            self._tracker,
            repository,
            build_handler_map(),
            audit,
            ExecutorConfig.from_settings(settings),
            sleep=sleep,
        )
        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def executor(self) -> BatchExecutor:
        return self._executor

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def repository(self) -> EntityRepository:
        return self._repository

    @property
    def quota(self) -> ItemQuota:
        return self._quota

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self):
        """Start the retention cleanup loop."""
        if self._running:
            return
        self._running = True
        if self._settings.bulk_retention_seconds > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Bulk operation service started")

    async def stop(self):
        """Stop the cleanup loop and interrupt running operations."""
        self._running = False
        task = self._cleanup_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        await self._executor.shutdown()
        logger.info("Bulk operation service stopped")

    async def _cleanup_loop(self):
        while self._running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
                if not self._running:
                    break
                await self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Bulk cleanup loop error: %s", e)

    async def cleanup_expired(self) -> int:
        """Drop finished operations older than the retention window."""
        retention = self._settings.bulk_retention_seconds
        if retention <= 0:
            return 0
        removed = await self._tracker.prune(utcnow() - timedelta(seconds=retention))
        if removed:
            logger.info("Removed %d expired bulk operations", removed)
        return removed

    # ── Validation & submission ──────────────────────────────

    async def validate(
        self,
        op_type: str,
        entity_type: str,
        entity_ids: Sequence[str],
        *,
        data: Optional[Dict[str, Any]] = None,
        batch_size: Optional[int] = None,
        is_allowed: Optional[Callable[[str], bool]] = None,
    ) -> ValidationResult:
        """Preview a bulk request without side effects."""
        return await self._validator.validate(
            op_type,
            entity_type,
            entity_ids,
            data=data,
            batch_size=batch_size,
            is_allowed=is_allowed,
        )

    async def submit(
        self,
        op_type: str,
        entity_type: str,
        entity_ids: Sequence[str],
        *,
        actor: Actor,
        data: Optional[Dict[str, Any]] = None,
        batch_size: Optional[int] = None,
        confirmed: bool = False,
        is_allowed: Optional[Callable[[str], bool]] = None,
    ) -> str:
        """Validate again, persist a pending operation and schedule it.

        Raises:
            BulkValidationError: the request is rejected; nothing was created
            QuotaExceeded: the admin exceeded the per-minute item quota for the type
        """
        result = await self._validator.validate(
            op_type,
            entity_type,
            entity_ids,
            data=data,
            batch_size=batch_size,
            is_allowed=is_allowed,
            confirmed=bool(confirmed),
            check_existence=False,
        )
        if not result.valid:
            logger.info("Bulk %s on %s rejected for %s: %s", op_type, entity_type, actor.username, result.error)
            raise BulkValidationError(result.error, result.summary, result.confirmation_required)

        summary = result.summary
        rejection = self._quota.reserve(actor.id, op_type, len(entity_ids))
        if rejection:
            raise QuotaExceeded(rejection, summary)

        operation = BulkOperation(
            id=uuid.uuid4().hex,
            type=op_type,
            entity_type=entity_type,
            entity_ids=list(entity_ids),
            requested_by=actor,
            batch_size=summary["batch_size"],
            total_batches=summary["estimated_batches"],
            data=dict(data or {}),
        )
        await self._tracker.create(operation)
        if result.missing_ids:
            logger.warning(
                "Bulk operation %s references %d missing %s(s)",
                operation.id, len(result.missing_ids), entity_type,
            )
        self._executor.start(operation.id)
        return operation.id

    async def wait(self, operation_id: str) -> Optional[dict]:
        """Block until an operation is no longer executing. Returns its final snapshot."""
        await self._executor.wait(operation_id)
        return await self._tracker.get(operation_id)

    # ── Queries ──────────────────────────────────────────────

    async def get(self, operation_id: str) -> dict:
        snapshot = await self._tracker.get(operation_id)
        if snapshot is None:
            raise OperationNotFound(operation_id)
        return snapshot

    async def cancel(
        self,
        operation_id: str,
        actor: Actor,
        *,
        can_cancel_any: bool = False,
        ip_address: Optional[str] = None,
    ) -> dict:
        """Request cooperative cancellation.

        Raises:
            OperationNotFound: unknown id
            CancelNotAllowed: actor is neither the requester nor allowed to cancel any
            OperationFinished: the operation already reached a terminal state
        """
        operation = await self._tracker.get_operation(operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)
        if operation.requested_by.id != actor.id and not can_cancel_any:
            raise CancelNotAllowed(operation_id)

        snapshot = await self._tracker.request_cancel(operation_id)
        logger.info("Cancellation of bulk operation %s requested by %s", operation_id, actor.username)
        await self._audit.record(
            operation_id, actor, operation.type, operation.entity_type,
            {
                "status": snapshot["status"],
                "processed": snapshot["progress"]["processed"],
                "failed": snapshot["progress"]["failed"],
                "requested_by": operation.requested_by.to_dict(),
            },
            action="bulk.cancel_requested",
            severity="medium",
            ip_address=ip_address,
        )
        return snapshot

    async def list_active(self, actor: Actor, *, view_all: bool = False) -> List[dict]:
        operations, _ = await self._tracker.list(
            requested_by=None if view_all else actor.id,
            statuses=ACTIVE_STATUSES,
            limit=_METRICS_SCAN_LIMIT,
        )
        return [op.snapshot() for op in operations]

    async def history(
        self,
        actor: Actor,
        *,
        view_all: bool = False,
        op_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[dict], int]:
        operations, total = await self._tracker.list(
            requested_by=None if view_all else actor.id,
            statuses=[status] if status else None,
            op_type=op_type,
            entity_type=entity_type,
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        return [op.snapshot() for op in operations], total

    async def error_analysis(self, operation_id: str) -> Optional[dict]:
        operation = await self._tracker.get_operation(operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)
        return error_analysis(operation)

    async def safety_metrics(self) -> dict:
        operations, _ = await self._tracker.list(limit=_METRICS_SCAN_LIMIT)
        metrics = safety_metrics(operations, self._settings)
        metrics["audit"] = {"consecutive_failures": self._audit.consecutive_failures}
        return metrics


def build_bulk_service(
    settings,
    db=None,
    repository: Optional[EntityRepository] = None,
    audit_sink: Optional[AuditSink] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> BulkOperationService:
    """Assemble a service on PostgreSQL when ``db`` is connected, in memory otherwise."""
    if db is not None and db.is_connected:
        repository = repository or PostgresEntityRepository(db)
        store: OperationStore = PostgresOperationStore(db)
        audit_sink = audit_sink or DatabaseAuditSink(db)
    else:
        repository = repository or InMemoryEntityRepository()
        store = InMemoryOperationStore()
        audit_sink = audit_sink or MemoryAuditSink()

    audit = AuditLogger(audit_sink, alert_after=settings.bulk_audit_alert_after)
    return BulkOperationService(settings, repository, store, audit, sleep=sleep)
