"""Bulk operation records and the stores that hold them.

The store is injected into the tracker and executor. The in-memory store is
the default; the PostgreSQL store keeps records in the bulk_operations table
when the database is connected.
"""
import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED, STATUS_ERROR})
ACTIVE_STATUSES = frozenset({STATUS_PENDING, STATUS_RUNNING})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Who requested an operation."""

    id: str
    username: str

    def to_dict(self) -> dict:
        return {"id": self.id, "username": self.username}


@dataclass
class BulkOperation:
    id: str
    type: str
    entity_type: str
    entity_ids: List[str]
    requested_by: Actor
    batch_size: int
    total_batches: int
    data: dict = field(default_factory=dict)
    status: str = STATUS_PENDING
    processed: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)
    current_batch: int = 0
    cancel_requested: bool = False
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def total(self) -> int:
        return len(self.entity_ids)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> dict:
        """Point-in-time view of the operation's progress."""
        done = self.processed + self.failed
        percentage = round(done / self.total * 100) if self.total else 0
        if self.start_time is None:
            duration = 0.0
        else:
            duration = ((self.end_time or utcnow()) - self.start_time).total_seconds()
        return {
            "id": self.id,
            "type": self.type,
            "entity_type": self.entity_type,
            "status": self.status,
            "progress": {
                "total": self.total,
                "processed": self.processed,
                "failed": self.failed,
                "percentage": percentage,
            },
            "errors": [dict(e) for e in self.errors],
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "batch_size": self.batch_size,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "requested_by": self.requested_by.to_dict(),
            "created_at": self.created_at,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_seconds": round(duration, 3),
        }


class OperationStore(Protocol):
    """Persistence interface for bulk operation records."""

    async def insert(self, operation: BulkOperation) -> None:
        ...

    async def get(self, operation_id: str) -> Optional[BulkOperation]:
        ...

    async def save(self, operation: BulkOperation) -> None:
        ...

    async def list(
        self,
        requested_by: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        op_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BulkOperation], int]:
        ...

    async def delete_finished_before(self, cutoff: datetime) -> int:
        ...


class InMemoryOperationStore:
    """Dictionary-backed store. Callers serialize access through the tracker lock."""

    def __init__(self):
        self._operations: Dict[str, BulkOperation] = {}

    async def insert(self, operation: BulkOperation) -> None:
        if operation.id in self._operations:
            raise KeyError(f"operation {operation.id} already exists")
        self._operations[operation.id] = copy.deepcopy(operation)

    async def get(self, operation_id: str) -> Optional[BulkOperation]:
        operation = self._operations.get(operation_id)
        return copy.deepcopy(operation) if operation is not None else None

    async def save(self, operation: BulkOperation) -> None:
        self._operations[operation.id] = copy.deepcopy(operation)

    async def list(
        self,
        requested_by: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        op_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BulkOperation], int]:
        wanted = set(statuses) if statuses else None
        matches = [
            op for op in self._operations.values()
            if (requested_by is None or op.requested_by.id == requested_by)
            and (wanted is None or op.status in wanted)
            and (op_type is None or op.type == op_type)
            and (entity_type is None or op.entity_type == entity_type)
        ]
        matches.sort(key=lambda op: op.created_at, reverse=True)
        page = matches[offset:offset + limit]
        return [copy.deepcopy(op) for op in page], len(matches)

    async def delete_finished_before(self, cutoff: datetime) -> int:
        expired = [
            op_id for op_id, op in self._operations.items()
            if op.is_terminal and (op.end_time or op.created_at) < cutoff
        ]
        for op_id in expired:
            del self._operations[op_id]
        return len(expired)


_COLUMNS = (
    "id, type, entity_type, entity_ids, data, status, total, processed, failed, errors, "
    "batch_size, current_batch, total_batches, cancel_requested, error, requested_by, "
    "created_at, start_time, end_time"
)


def _row_to_operation(row) -> BulkOperation:
    requested_by = json.loads(row["requested_by"])
    return BulkOperation(
        id=row["id"],
        type=row["type"],
        entity_type=row["entity_type"],
        entity_ids=json.loads(row["entity_ids"]),
        requested_by=Actor(id=requested_by["id"], username=requested_by["username"]),
        batch_size=row["batch_size"],
        total_batches=row["total_batches"],
        data=json.loads(row["data"]) if row["data"] else {},
        status=row["status"],
        processed=row["processed"],
        failed=row["failed"],
        errors=json.loads(row["errors"]),
        current_batch=row["current_batch"],
        cancel_requested=row["cancel_requested"],
        error=row["error"],
        created_at=row["created_at"],
        start_time=row["start_time"],
        end_time=row["end_time"],
    )


class PostgresOperationStore:
    """Store backed by the bulk_operations table."""

    def __init__(self, db):
        self._db = db

    def _params(self, op: BulkOperation) -> tuple:
        return (
            op.id, op.type, op.entity_type, json.dumps(op.entity_ids), json.dumps(op.data, default=str),
            op.status, op.total, op.processed, op.failed, json.dumps(op.errors),
            op.batch_size, op.current_batch, op.total_batches, op.cancel_requested, op.error,
            json.dumps(op.requested_by.to_dict()), op.created_at, op.start_time, op.end_time,
        )

    async def insert(self, operation: BulkOperation) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                f"INSERT INTO bulk_operations ({_COLUMNS}) VALUES "
                "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19)",
                *self._params(operation),
            )

    async def get(self, operation_id: str) -> Optional[BulkOperation]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM bulk_operations WHERE id = $1", operation_id)
        return _row_to_operation(row) if row else None

    async def save(self, operation: BulkOperation) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                UPDATE bulk_operations SET
                    status = $2, processed = $3, failed = $4, errors = $5,
                    current_batch = $6, cancel_requested = $7, error = $8,
                    start_time = $9, end_time = $10
                WHERE id = $1
                """,
                operation.id, operation.status, operation.processed, operation.failed,
                json.dumps(operation.errors), operation.current_batch, operation.cancel_requested,
                operation.error, operation.start_time, operation.end_time,
            )

    async def list(
        self,
        requested_by: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        op_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BulkOperation], int]:
        where_parts = []
        params: list = []

        if requested_by is not None:
            params.append(requested_by)
            where_parts.append(f"requested_by->>'id' = ${len(params)}")
        if statuses:
            params.append(list(statuses))
            where_parts.append(f"status = ANY(${len(params)}::text[])")
        if op_type:
            params.append(op_type)
            where_parts.append(f"type = ${len(params)}")
        if entity_type:
            params.append(entity_type)
            where_parts.append(f"entity_type = ${len(params)}")

        where = ("WHERE " + " AND ".join(where_parts)) if where_parts else ""

        async with self._db.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM bulk_operations {where}", *params)
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM bulk_operations {where} "
                f"ORDER BY created_at DESC LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}",
                *params, limit, offset,
            )
        return [_row_to_operation(r) for r in rows], total

    async def delete_finished_before(self, cutoff: datetime) -> int:
        # Database rows are history; retention is left to the database's own policy.
        return 0
