"""Pre-flight checks for bulk operation requests.

Validation is a read-then-compute step with no side effects. It runs once
when the admin previews an operation and again when the operation is
submitted, since entities may have changed in between.
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from homeadmin.backend.core.bulk.handlers import ADMIN_PROTECTED_OPERATIONS, ADMIN_RESTRICTED_FIELDS
from homeadmin.backend.core.bulk.registry import ENTITY_TYPES, batch_size_for, get_operation
from homeadmin.backend.core.entities import ADMIN_ROLE, UPDATABLE_FIELDS, EntityRepository, is_protected_admin

logger = logging.getLogger(__name__)

TOO_MANY_ITEMS = "too many items"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PROTECTED_FIELDS = frozenset({"id", "created_at"})
_SUBSCRIPTION_STATUSES = frozenset({"ACTIVE", "INACTIVE", "CANCELLED", "SUSPENDED"})

# How many offending ids to name in a rejection message
_MAX_IDS_IN_MESSAGE = 10


@dataclass(frozen=True)
class BulkLimits:
    """Safety limits applied to every bulk operation."""

    max_items: int = 500
    default_batch_size: int = 50
    max_batch_size: int = 500
    seconds_per_batch: float = 2.0
    confirm_threshold: int = 100

    @classmethod
    def from_settings(cls, settings) -> "BulkLimits":
        return cls(
            max_items=settings.bulk_max_items,
            default_batch_size=settings.bulk_default_batch_size,
            max_batch_size=settings.bulk_max_batch_size,
            seconds_per_batch=settings.bulk_seconds_per_batch,
            confirm_threshold=settings.bulk_confirm_threshold,
        )


@dataclass
class ValidationResult:
    valid: bool
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    confirmation_required: bool = False
    missing_ids: List[str] = field(default_factory=list)

    @classmethod
    def reject(cls, reason: str, **kwargs) -> "ValidationResult":
        return cls(valid=False, error=reason, **kwargs)


def _format_ids(ids: Sequence[str]) -> str:
    shown = ", ".join(ids[:_MAX_IDS_IN_MESSAGE])
    if len(ids) > _MAX_IDS_IN_MESSAGE:
        shown += f" and {len(ids) - _MAX_IDS_IN_MESSAGE} more"
    return shown


def validate_update_data(entity_type: str, data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return a rejection reason for an unsafe update payload, or None."""
    if not data or not isinstance(data, dict):
        return "Update data must be a non-empty object"

    if _PROTECTED_FIELDS & data.keys():
        return "Cannot update protected system fields"

    unknown = sorted(set(data) - UPDATABLE_FIELDS.get(entity_type, frozenset()))
    if unknown:
        return f"Unknown fields for {entity_type}: {', '.join(unknown)}"

    if entity_type == "user":
        if str(data.get("role", "")).upper() == ADMIN_ROLE:
            return "Cannot bulk assign admin role for security reasons"
        email = data.get("email")
        if email is not None and not _EMAIL_RE.match(str(email)):
            return "Invalid email format provided"

    if entity_type == "subscription":
        status = data.get("status")
        if status is not None and status not in _SUBSCRIPTION_STATUSES:
            return f"Invalid subscription status: {status}"

    return None


class BulkValidator:
    """Checks limits, registry membership, permissions and business rules."""

    def __init__(self, repository: EntityRepository, limits: BulkLimits):
        self._repository = repository
        self._limits = limits

    @property
    def limits(self) -> BulkLimits:
        return self._limits

    def summarize(self, op_type: str, entity_type: str, item_count: int, batch_size: Optional[int] = None) -> dict:
        """Deterministic preview of how an operation will be executed."""
        descriptor = get_operation(op_type)
        size = batch_size_for(
            op_type,
            batch_size,
            self._limits.default_batch_size,
            self._limits.max_batch_size,
        )
        batches = math.ceil(item_count / size)
        requires_confirmation = bool(descriptor and descriptor.requires_confirmation) or (
            item_count > self._limits.confirm_threshold
        )
        return {
            "type": op_type,
            "entity_type": entity_type,
            "item_count": item_count,
            "batch_size": size,
            "estimated_batches": batches,
            "estimated_duration_seconds": batches * self._limits.seconds_per_batch,
            "risk_level": descriptor.risk_level if descriptor else None,
            "requires_confirmation": requires_confirmation,
        }

    async def validate(
        self,
        op_type: str,
        entity_type: str,
        entity_ids: Sequence[str],
        *,
        data: Optional[Dict[str, Any]] = None,
        batch_size: Optional[int] = None,
        is_allowed: Optional[Callable[[str], bool]] = None,
        confirmed: Optional[bool] = None,
        check_existence: bool = True,
    ) -> ValidationResult:
        """Validate a bulk request.

        Args:
            is_allowed: permission predicate for the operation type; skipped when None
            confirmed: the caller's confirmation flag; confirmation is only
                enforced when a value is given (i.e. on submission)
            check_existence: reject when any id does not resolve to an entity.
                Submission passes False so that vanished entities become
                per-item failures instead of blocking the whole operation.

        Raises:
            SystemicError: entity storage is unreachable
        """
        if not entity_ids:
            return ValidationResult.reject("entityIds must be a non-empty list")
        if len(entity_ids) > self._limits.max_items:
            return ValidationResult.reject(TOO_MANY_ITEMS)
        if any(not isinstance(i, str) or not i for i in entity_ids):
            return ValidationResult.reject("entityIds must contain non-empty strings")

        if entity_type not in ENTITY_TYPES:
            return ValidationResult.reject(f"Unsupported entity type: {entity_type}")
        descriptor = get_operation(op_type)
        if descriptor is None:
            return ValidationResult.reject(f"Unsupported operation type: {op_type}")
        if entity_type not in descriptor.supported_entities:
            return ValidationResult.reject(f"Operation {op_type} is not supported for {entity_type}")

        if is_allowed is not None and not is_allowed(op_type):
            return ValidationResult.reject(f"Insufficient permissions for bulk {op_type} on {entity_type}")

        if op_type == "update":
            reason = validate_update_data(entity_type, data)
            if reason:
                return ValidationResult.reject(reason)

        summary = self.summarize(op_type, entity_type, len(entity_ids), batch_size)

        unique_ids = list(dict.fromkeys(entity_ids))
        records = await self._repository.find_many(entity_type, unique_ids)

        missing = [i for i in unique_ids if i not in records]
        if missing and check_existence:
            return ValidationResult.reject(
                f"Entities not found: {_format_ids(missing)}",
                summary=summary,
                missing_ids=missing,
            )

        protected = self._protected_ids(op_type, entity_type, data, records, unique_ids)
        if protected:
            return ValidationResult.reject(
                f"Cannot {op_type} protected admin accounts: {_format_ids(protected)}",
                summary=summary,
            )

        if confirmed is not None and summary["requires_confirmation"] and not confirmed:
            return ValidationResult.reject(
                "Confirmation required for this operation",
                summary=summary,
                confirmation_required=True,
            )

        return ValidationResult(valid=True, summary=summary, missing_ids=missing)

    @staticmethod
    def _protected_ids(
        op_type: str,
        entity_type: str,
        data: Optional[Dict[str, Any]],
        records: Dict[str, dict],
        ordered_ids: Sequence[str],
    ) -> List[str]:
        if op_type in ADMIN_PROTECTED_OPERATIONS:
            guarded = True
        elif op_type == "update":
            guarded = bool(ADMIN_RESTRICTED_FIELDS & (data or {}).keys())
        else:
            guarded = False
        if not guarded:
            return []
        return [i for i in ordered_ids if is_protected_admin(entity_type, records.get(i))]
