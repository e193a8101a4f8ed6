"""Audit trail for bulk operations.

Writes are best-effort: a failing sink is logged and never blocks the
operation being audited. Repeated failures escalate to an error-level log
line so that monitoring picks them up.
"""
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Protocol

from homeadmin.backend.core.bulk.store import Actor, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    operation_id: str
    actor: Actor
    action: str
    op_type: str
    entity_type: str
    outcome: Dict[str, Any]
    severity: str = "low"
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def resource_id(self) -> str:
        return f"bulk-{self.operation_id}"


class AuditSink(Protocol):
    async def write(self, entry: AuditEntry) -> None:
        ...


class MemoryAuditSink:
    """Bounded in-process audit log, used when no database is configured."""

    def __init__(self, maxlen: int = 10_000):
        self._entries: Deque[AuditEntry] = deque(maxlen=maxlen)

    async def write(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def entries(self, operation_id: Optional[str] = None) -> List[AuditEntry]:
        if operation_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.operation_id == operation_id]


class DatabaseAuditSink:
    """Appends to the admin_audit_log table."""

    def __init__(self, db):
        self._db = db

    async def write(self, entry: AuditEntry) -> None:
        details = json.dumps(
            {"operation_type": entry.op_type, **entry.outcome},
            default=str,
        )
        async with self._db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO admin_audit_log
                    (admin_id, admin_username, action, resource, resource_id, details, severity, ip_address)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                entry.actor.id, entry.actor.username, entry.action, entry.entity_type,
                entry.resource_id, details, entry.severity, entry.ip_address,
            )


class AuditLogger:
    """Records who ran which bulk operation and how it ended."""

    def __init__(self, sink: AuditSink, alert_after: int = 5):
        self._sink = sink
        self._alert_after = alert_after
        self._consecutive_failures = 0

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def record(
        self,
        operation_id: str,
        actor: Actor,
        op_type: str,
        entity_type: str,
        outcome_summary: Dict[str, Any],
        *,
        action: Optional[str] = None,
        severity: str = "low",
        ip_address: Optional[str] = None,
    ) -> bool:
        """Append one audit entry. Returns False if the write failed."""
        entry = AuditEntry(
            operation_id=operation_id,
            actor=actor,
            action=action or f"bulk_{op_type}",
            op_type=op_type,
            entity_type=entity_type,
            outcome=dict(outcome_summary),
            severity=severity,
            ip_address=ip_address,
        )
        try:
            await self._sink.write(entry)
        except Exception as e:
            self._consecutive_failures += 1
            logger.warning("Audit write failed for operation %s (%s): %s", operation_id, entry.action, e)
            if self._consecutive_failures >= self._alert_after:
                logger.error(
                    "Audit logging persistently failing: %d consecutive failures",
                    self._consecutive_failures,
                )
            return False

        self._consecutive_failures = 0
        return True
