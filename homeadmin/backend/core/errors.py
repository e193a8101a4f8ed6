"""Structured error codes for API responses.

Usage:
    from homeadmin.backend.core.errors import api_error, E

    raise api_error(404, E.OPERATION_NOT_FOUND)
    raise api_error(400, E.BULK_VALIDATION_FAILED, "too many items")
"""
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException


class ErrorCode(str, Enum):
    """All API error codes. Frontend maps these to i18n translations."""

    # ── Auth ──────────────────────────────────────────────────
    FORBIDDEN = "FORBIDDEN"

    # ── Bulk operations ───────────────────────────────────────
    BULK_VALIDATION_FAILED = "BULK_VALIDATION_FAILED"
    BULK_CONFIRMATION_REQUIRED = "BULK_CONFIRMATION_REQUIRED"
    BULK_QUOTA_EXCEEDED = "BULK_QUOTA_EXCEEDED"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    OPERATION_NOT_RUNNING = "OPERATION_NOT_RUNNING"
    NO_ERRORS_TO_ANALYZE = "NO_ERRORS_TO_ANALYZE"

    # ── Generic ───────────────────────────────────────────────
    DB_UNAVAILABLE = "DB_UNAVAILABLE"


# Shorthand alias
E = ErrorCode

# Default human-readable messages per code (English fallback)
_DEFAULT_MESSAGES: dict[str, str] = {
    E.FORBIDDEN: "Access denied",
    E.BULK_VALIDATION_FAILED: "Bulk operation rejected",
    E.BULK_CONFIRMATION_REQUIRED: "Confirmation required for this operation",
    E.BULK_QUOTA_EXCEEDED: "Bulk item quota exceeded",
    E.OPERATION_NOT_FOUND: "Operation not found",
    E.OPERATION_NOT_RUNNING: "Operation already finished",
    E.NO_ERRORS_TO_ANALYZE: "Operation has no errors to analyze",
    E.DB_UNAVAILABLE: "Database not available",
}


def api_error(
    status_code: int,
    code: ErrorCode,
    detail: str | None = None,
    extra: Optional[dict[str, Any]] = None,
) -> HTTPException:
    """Create an HTTPException with a structured error code.

    Args:
        status_code: HTTP status code (400, 404, 500, etc.)
        code: ErrorCode enum value
        detail: Human-readable message. If None, uses default for the code.
        extra: Additional fields merged into the error body (e.g. a summary).

    Returns:
        HTTPException with JSON body {"detail": "...", "code": "ERROR_CODE", ...}
    """
    message = detail or _DEFAULT_MESSAGES.get(code, code.value)
    body: dict[str, Any] = {"detail": message, "code": code.value}
    if extra:
        body.update(extra)
    return HTTPException(status_code=status_code, detail=body)
