"""Single-item mutations, one per registered operation type.

Every handler has the same signature and either returns normally (item
processed) or raises ItemError (item failed). Anything else propagates to
the executor as a systemic failure.
"""
import logging
from typing import Any, Awaitable, Callable, Dict

from homeadmin.backend.core.bulk.errors import ItemError
from homeadmin.backend.core.bulk.registry import OPERATIONS
from homeadmin.backend.core.entities import EntityRepository, is_protected_admin

logger = logging.getLogger(__name__)

Handler = Callable[[EntityRepository, str, str, Dict[str, Any]], Awaitable[None]]

# Operations that admin accounts are shielded from
ADMIN_PROTECTED_OPERATIONS = frozenset({"delete", "suspend", "deactivate"})

# Fields of an admin account a bulk update may not change
ADMIN_RESTRICTED_FIELDS = frozenset({"role", "permissions", "is_active"})

NOT_FOUND_MESSAGE = "not found"


async def _load(repo: EntityRepository, entity_type: str, entity_id: str) -> dict:
    record = await repo.find_by_id(entity_type, entity_id)
    if record is None:
        raise ItemError(NOT_FOUND_MESSAGE, ItemError.NOT_FOUND)
    return record


async def delete_entity(repo: EntityRepository, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
    record = await _load(repo, entity_type, entity_id)
    if is_protected_admin(entity_type, record):
        raise ItemError("Cannot delete admin users via bulk operations", ItemError.ADMIN_PROTECTION)
    if not await repo.delete(entity_type, entity_id):
        # Removed by someone else between the read and the delete
        raise ItemError(NOT_FOUND_MESSAGE, ItemError.NOT_FOUND)


async def update_entity(repo: EntityRepository, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
    record = await _load(repo, entity_type, entity_id)
    if is_protected_admin(entity_type, record) and ADMIN_RESTRICTED_FIELDS & data.keys():
        raise ItemError("Cannot modify critical admin fields via bulk operations", ItemError.ADMIN_PROTECTION)
    if not await repo.update_fields(entity_type, entity_id, data):
        raise ItemError(NOT_FOUND_MESSAGE, ItemError.NOT_FOUND)


def _status_handler(op_type: str, status: str) -> Handler:
    """Build a handler that moves an entity into a fixed status."""

    async def handler(repo: EntityRepository, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        record = await _load(repo, entity_type, entity_id)
        if op_type in ADMIN_PROTECTED_OPERATIONS and is_protected_admin(entity_type, record):
            raise ItemError(f"Cannot {op_type} admin users via bulk operations", ItemError.ADMIN_PROTECTION)
        if not await repo.set_status(entity_type, entity_id, status):
            raise ItemError(NOT_FOUND_MESSAGE, ItemError.NOT_FOUND)

    handler.__name__ = f"{op_type}_entity"
    return handler


def build_handler_map() -> Dict[str, Handler]:
    """Resolve the type -> handler table once at startup."""
    handlers: Dict[str, Handler] = {
        "delete": delete_entity,
        "update": update_entity,
        "activate": _status_handler("activate", "ACTIVE"),
        "deactivate": _status_handler("deactivate", "INACTIVE"),
        "suspend": _status_handler("suspend", "SUSPENDED"),
    }
    missing = {op.type for op in OPERATIONS} - handlers.keys()
    if missing:
        raise RuntimeError(f"No handler registered for operation types: {sorted(missing)}")
    return handlers
