"""Error analysis and safety metrics over bulk operation records."""
from collections import Counter
from datetime import timedelta
from typing import Iterable, Optional

from homeadmin.backend.core.bulk.registry import OPERATIONS
from homeadmin.backend.core.bulk.store import STATUS_ERROR, BulkOperation, utcnow

RECOMMENDATIONS = {
    "NOT_FOUND": (
        "Some records may have been deleted by another process. "
        "Consider refreshing the data before retrying."
    ),
    "ADMIN_PROTECTION": (
        "Admin records are protected from bulk operations. "
        "Remove admin users from selection."
    ),
    "CONSTRAINT": (
        "Some records are still referenced by other data. "
        "Resolve the dependent records before retrying."
    ),
}

_TOP_ERRORS = 5


def error_analysis(operation: BulkOperation) -> Optional[dict]:
    """Group an operation's item errors. Returns None when there are none."""
    if not operation.errors:
        return None

    by_type: Counter = Counter()
    by_code: Counter = Counter()
    for entry in operation.errors:
        message = entry.get("error_message") or ""
        by_type[message.split(":")[0].strip() or "Unknown"] += 1
        if entry.get("error_code"):
            by_code[entry["error_code"]] += 1

    return {
        "operation_id": operation.id,
        "total_errors": len(operation.errors),
        "errors_by_type": dict(by_type),
        "errors_by_code": dict(by_code),
        "common_patterns": [message for message, _ in by_type.most_common(_TOP_ERRORS)],
        "recommendations": [text for code, text in RECOMMENDATIONS.items() if by_code.get(code)],
    }


def safety_metrics(operations: Iterable[BulkOperation], settings, window_hours: int = 24) -> dict:
    """Limits in force plus a summary of recent activity."""
    since = utcnow() - timedelta(hours=window_hours)
    recent = [op for op in operations if op.created_at >= since]

    processed = sum(op.processed for op in recent)
    failed = sum(op.failed for op in recent)
    attempted = processed + failed
    error_counts: Counter = Counter(
        entry.get("error_message") or "Unknown" for op in recent for entry in op.errors
    )

    return {
        "limits": {
            "max_items": settings.bulk_max_items,
            "default_batch_size": settings.bulk_default_batch_size,
            "max_batch_size": settings.bulk_max_batch_size,
            "batch_delay_ms": settings.bulk_batch_delay_ms,
            "confirm_threshold": settings.bulk_confirm_threshold,
            "operation_timeout_seconds": settings.bulk_operation_timeout_seconds,
            "items_per_minute": {op.type: op.items_per_minute for op in OPERATIONS},
        },
        "safety_features": {
            "throughput_enforced": settings.bulk_enforce_throughput,
            "batch_processing_enabled": True,
            "rollback_supported": False,
            "audit_logging_enabled": True,
            "confirmation_required_for_risky_operations": True,
            "admin_protection_enabled": True,
            "per_admin_item_quota_enabled": True,
        },
        "recent_activity": {
            "window_hours": window_hours,
            "total_operations": len(recent),
            "failed_operations": sum(1 for op in recent if op.status == STATUS_ERROR),
            "items_processed": processed,
            "items_failed": failed,
            "success_rate": round(processed / attempted * 100, 1) if attempted else None,
            "most_common_errors": [
                {"error": message, "count": count}
                for message, count in error_counts.most_common(_TOP_ERRORS)
            ],
        },
    }
