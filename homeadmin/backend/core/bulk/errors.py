"""Exception taxonomy for bulk operations.

Validation errors are surfaced synchronously to the caller. Item errors are
recorded against a single entity and never abort an operation. Systemic
errors stop the whole operation.
"""
from typing import Optional


class BulkError(Exception):
    """Base class for bulk operation errors."""


class BulkValidationError(BulkError):
    """Request rejected before any entity is touched."""

    def __init__(self, reason: str, summary: Optional[dict] = None, confirmation_required: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.summary = summary
        self.confirmation_required = confirmation_required


class ItemError(BulkError):
    """Single-entity mutation failure."""

    NOT_FOUND = "NOT_FOUND"
    ADMIN_PROTECTION = "ADMIN_PROTECTION"
    INVALID_DATA = "INVALID_DATA"
    CONSTRAINT = "CONSTRAINT"
    UNKNOWN = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: str = UNKNOWN):
        super().__init__(message)
        self.message = message
        self.code = code


class SystemicError(BulkError):
    """Storage or connectivity failure affecting the whole operation."""


class OperationNotFound(BulkError):
    """No operation with the given id."""


class OperationFinished(BulkError):
    """Operation already reached a terminal state."""


class CancelNotAllowed(BulkError):
    """Caller may not cancel someone else's operation."""


class QuotaExceeded(BulkValidationError):
    """Admin submitted more items of a type than the per-minute quota allows."""
