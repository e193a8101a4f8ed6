"""Entity storage used by bulk operations.

Two implementations share the same async interface: an in-memory repository
for development and tests, and a PostgreSQL repository on top of the shared
asyncpg pool. Storage failures are translated into the bulk error taxonomy:
constraint/data problems become ItemError, connectivity problems become
SystemicError.
"""
import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

import asyncpg

from homeadmin.backend.core.bulk.errors import ItemError, SystemicError

logger = logging.getLogger(__name__)

# entity type -> table name
TABLES: Dict[str, str] = {
    "user": "users",
    "subscription": "subscriptions",
    "booking": "bookings",
    "serviceRequest": "service_requests",
}

# Columns a bulk update may touch, per entity type
UPDATABLE_FIELDS: Dict[str, frozenset] = {
    "user": frozenset({"email", "name", "phone", "role", "status", "is_active"}),
    "subscription": frozenset({"plan", "status", "next_billing_at"}),
    "booking": frozenset({"status", "scheduled_at", "notes"}),
    "serviceRequest": frozenset({"status", "category", "description"}),
}

ADMIN_ROLE = "ADMIN"


def is_protected_admin(entity_type: str, record: Optional[dict]) -> bool:
    """Admin accounts are shielded from destructive bulk actions."""
    return entity_type == "user" and bool(record) and str(record.get("role", "")).upper() == ADMIN_ROLE


class EntityRepository(Protocol):
    """Storage interface consumed by the validator and the operation handlers."""

    async def find_many(self, entity_type: str, ids: Iterable[str]) -> Dict[str, dict]:
        ...

    async def find_by_id(self, entity_type: str, entity_id: str) -> Optional[dict]:
        ...

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        ...

    async def set_status(self, entity_type: str, entity_id: str, status: str) -> bool:
        ...

    async def update_fields(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> bool:
        ...


class InMemoryEntityRepository:
    """Dictionary-backed repository. Used when no database is configured."""

    def __init__(self, seed: Optional[Dict[str, List[dict]]] = None):
        self._data: Dict[str, Dict[str, dict]] = {entity_type: {} for entity_type in TABLES}
        for entity_type, records in (seed or {}).items():
            self.seed(entity_type, records)

    def seed(self, entity_type: str, records: Iterable[dict]) -> None:
        table = self._table(entity_type)
        for record in records:
            table[str(record["id"])] = dict(record)

    def _table(self, entity_type: str) -> Dict[str, dict]:
        if entity_type not in self._data:
            raise SystemicError(f"unknown entity type: {entity_type}")
        return self._data[entity_type]

    async def find_many(self, entity_type: str, ids: Iterable[str]) -> Dict[str, dict]:
        table = self._table(entity_type)
        return {i: copy.deepcopy(table[i]) for i in ids if i in table}

    async def find_by_id(self, entity_type: str, entity_id: str) -> Optional[dict]:
        record = self._table(entity_type).get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        return self._table(entity_type).pop(entity_id, None) is not None

    async def set_status(self, entity_type: str, entity_id: str, status: str) -> bool:
        return await self.update_fields(entity_type, entity_id, {"status": status})

    async def update_fields(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> bool:
        record = self._table(entity_type).get(entity_id)
        if record is None:
            return False
        record.update(fields)
        record["updated_at"] = datetime.now(timezone.utc)
        return True


@asynccontextmanager
async def _translate_storage_errors():
    """Map asyncpg failures onto item-level or systemic errors."""
    try:
        yield
    except asyncpg.IntegrityConstraintViolationError as e:
        raise ItemError(str(e), ItemError.CONSTRAINT) from e
    except asyncpg.DataError as e:
        raise ItemError(str(e), ItemError.INVALID_DATA) from e
    except (OSError, asyncio.TimeoutError, asyncpg.InterfaceError, asyncpg.PostgresConnectionError) as e:
        raise SystemicError(f"storage unavailable: {e}") from e


class PostgresEntityRepository:
    """Repository backed by the shared asyncpg pool."""

    def __init__(self, db):
        self._db = db

    def _table(self, entity_type: str) -> str:
        try:
            return TABLES[entity_type]
        except KeyError:
            raise SystemicError(f"unknown entity type: {entity_type}")

    def _ensure_connected(self) -> None:
        if not self._db.is_connected:
            raise SystemicError("storage unavailable: database not connected")

    async def find_many(self, entity_type: str, ids: Iterable[str]) -> Dict[str, dict]:
        table = self._table(entity_type)
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return {}
        self._ensure_connected()
        async with _translate_storage_errors():
            async with self._db.acquire() as conn:
                rows = await conn.fetch(f"SELECT * FROM {table} WHERE id = ANY($1::text[])", id_list)
        return {row["id"]: dict(row) for row in rows}

    async def find_by_id(self, entity_type: str, entity_id: str) -> Optional[dict]:
        table = self._table(entity_type)
        self._ensure_connected()
        async with _translate_storage_errors():
            async with self._db.acquire() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1", entity_id)
        return dict(row) if row else None

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        table = self._table(entity_type)
        self._ensure_connected()
        async with _translate_storage_errors():
            async with self._db.acquire() as conn:
                result = await conn.execute(f"DELETE FROM {table} WHERE id = $1", entity_id)
        return result == "DELETE 1"

    async def set_status(self, entity_type: str, entity_id: str, status: str) -> bool:
        return await self.update_fields(entity_type, entity_id, {"status": status})

    async def update_fields(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> bool:
        table = self._table(entity_type)
        allowed = UPDATABLE_FIELDS[entity_type]
        columns = [name for name in fields if name in allowed]
        if not columns:
            raise ItemError("no updatable fields", ItemError.INVALID_DATA)

        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=2))
        params = [fields[col] for col in columns]
        self._ensure_connected()
        async with _translate_storage_errors():
            async with self._db.acquire() as conn:
                result = await conn.execute(
                    f"UPDATE {table} SET {assignments}, updated_at = NOW() WHERE id = $1",
                    entity_id, *params,
                )
        return result == "UPDATE 1"
