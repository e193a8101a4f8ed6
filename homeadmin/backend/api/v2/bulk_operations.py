"""Bulk operations API endpoints.

Submission returns immediately with an operation id; the admin UI polls the
status endpoint until the operation reaches a terminal state.
"""
import logging
import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from homeadmin.backend.api.deps import AdminUser, get_bulk_service, get_client_ip, require_permission
from homeadmin.backend.core.bulk.errors import (
    BulkValidationError,
    CancelNotAllowed,
    OperationFinished,
    OperationNotFound,
    QuotaExceeded,
    SystemicError,
)
from homeadmin.backend.core.bulk.registry import list_operations
from homeadmin.backend.core.bulk.service import BulkOperationService
from homeadmin.backend.core.errors import api_error, E
from homeadmin.backend.core.rate_limit import limiter, RATE_BULK, RATE_MUTATIONS, RATE_READ
from homeadmin.backend.core.rbac import BULK_CANCEL_ANY, BULK_VIEW_ALL
from homeadmin.backend.schemas.bulk import (
    BulkOperationRequest,
    CancelResponse,
    ErrorAnalysis,
    OperationDescriptorOut,
    ProgressSnapshot,
    SafetyMetrics,
    SubmitResponse,
    SupportedOperationsResponse,
    ValidationResponse,
    ValidationSummary,
)
from homeadmin.backend.schemas.common import PaginatedResponse

logger = logging.getLogger(__name__)

router = APIRouter()

require_bulk = require_permission("bulk", "execute")


def _summary_body(summary: Optional[dict]) -> Optional[dict]:
    if summary is None:
        return None
    return ValidationSummary(**summary).model_dump(by_alias=True)


async def _visible_snapshot(service: BulkOperationService, operation_id: str, admin: AdminUser) -> dict:
    try:
        snapshot = await service.get(operation_id)
    except OperationNotFound:
        raise api_error(404, E.OPERATION_NOT_FOUND)
    if snapshot["requested_by"]["id"] != admin.id and not admin.has_permission(*BULK_VIEW_ALL):
        raise api_error(403, E.FORBIDDEN)
    return snapshot


@router.post("/validate", response_model=ValidationResponse)
@limiter.limit(RATE_MUTATIONS)
async def validate_bulk_operation(
    request: Request,
    body: BulkOperationRequest,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Preview a bulk operation. Rejections are reported in the body, not as errors."""
    try:
        result = await service.validate(
            body.type,
            body.entity_type,
            body.entity_ids,
            data=body.data,
            batch_size=body.batch_size,
            is_allowed=admin.can_run,
        )
    except SystemicError as e:
        logger.error("Bulk validation failed: %s", e)
        raise api_error(503, E.DB_UNAVAILABLE)

    return ValidationResponse(
        valid=result.valid,
        summary=ValidationSummary(**result.summary) if result.summary else None,
        error=result.error,
    )


@router.post("", response_model=SubmitResponse, status_code=202)
@limiter.limit(RATE_BULK)
async def submit_bulk_operation(
    request: Request,
    body: BulkOperationRequest,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Start a bulk operation in the background."""
    try:
        operation_id = await service.submit(
            body.type,
            body.entity_type,
            body.entity_ids,
            actor=admin.actor,
            data=body.data,
            batch_size=body.batch_size,
            confirmed=body.confirmed,
            is_allowed=admin.can_run,
        )
    except QuotaExceeded as e:
        raise api_error(429, E.BULK_QUOTA_EXCEEDED, e.reason)
    except BulkValidationError as e:
        code = E.BULK_CONFIRMATION_REQUIRED if e.confirmation_required else E.BULK_VALIDATION_FAILED
        extra = {"summary": _summary_body(e.summary)} if e.summary else None
        raise api_error(400, code, e.reason, extra)
    except SystemicError as e:
        logger.error("Bulk submission failed: %s", e)
        raise api_error(503, E.DB_UNAVAILABLE)

    logger.info(
        "Bulk %s on %d %s(s) submitted by %s from %s",
        body.type, len(body.entity_ids), body.entity_type, admin.username, get_client_ip(request),
    )
    return SubmitResponse(operation_id=operation_id)


@router.get("/supported", response_model=SupportedOperationsResponse)
@limiter.limit(RATE_READ)
async def get_supported_operations(
    request: Request,
    entity_type: str = Query(..., alias="entityType"),
    admin: AdminUser = Depends(require_bulk),
):
    """Operations the caller may run on the given entity type."""
    operations = [
        OperationDescriptorOut(**op.to_dict())
        for op in list_operations(entity_type)
        if admin.can_run(op.type)
    ]
    return SupportedOperationsResponse(entity_type=entity_type, operations=operations)


@router.get("/active", response_model=List[ProgressSnapshot])
@limiter.limit(RATE_READ)
async def list_active_operations(
    request: Request,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Pending and running operations visible to the caller."""
    snapshots = await service.list_active(admin.actor, view_all=admin.has_permission(*BULK_VIEW_ALL))
    return [ProgressSnapshot(**s) for s in snapshots]


@router.get("/history", response_model=PaginatedResponse[ProgressSnapshot])
@limiter.limit(RATE_READ)
async def get_operation_history(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100, alias="perPage"),
    op_type: Optional[str] = Query(None, alias="type"),
    entity_type: Optional[str] = Query(None, alias="entityType"),
    status: Optional[str] = Query(None),
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Bulk operation history, newest first."""
    snapshots, total = await service.history(
        admin.actor,
        view_all=admin.has_permission(*BULK_VIEW_ALL),
        op_type=op_type,
        entity_type=entity_type,
        status=status,
        page=page,
        per_page=per_page,
    )
    return PaginatedResponse[ProgressSnapshot](
        items=[ProgressSnapshot(**s) for s in snapshots],
        total=total,
        page=page,
        per_page=per_page,
        pages=math.ceil(total / per_page) if total else 0,
    )


@router.get("/safety-metrics", response_model=SafetyMetrics)
@limiter.limit(RATE_READ)
async def get_safety_metrics(
    request: Request,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Limits in force plus recent bulk activity."""
    return SafetyMetrics(**await service.safety_metrics())


@router.get("/{operation_id}", response_model=ProgressSnapshot)
@limiter.limit(RATE_READ)
async def get_operation_status(
    request: Request,
    operation_id: str,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Current progress of an operation."""
    return ProgressSnapshot(**await _visible_snapshot(service, operation_id, admin))


@router.post("/{operation_id}/cancel", response_model=CancelResponse)
@limiter.limit(RATE_MUTATIONS)
async def cancel_operation(
    request: Request,
    operation_id: str,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Ask a running operation to stop at its next batch boundary."""
    try:
        snapshot = await service.cancel(
            operation_id,
            admin.actor,
            can_cancel_any=admin.has_permission(*BULK_CANCEL_ANY),
            ip_address=get_client_ip(request),
        )
    except OperationNotFound:
        raise api_error(404, E.OPERATION_NOT_FOUND)
    except CancelNotAllowed:
        raise api_error(403, E.FORBIDDEN, "Only the requester may cancel this operation")
    except OperationFinished:
        raise api_error(409, E.OPERATION_NOT_RUNNING)

    return CancelResponse(accepted=True, status=snapshot["status"])


@router.get("/{operation_id}/error-analysis", response_model=ErrorAnalysis)
@limiter.limit(RATE_READ)
async def get_error_analysis(
    request: Request,
    operation_id: str,
    admin: AdminUser = Depends(require_bulk),
    service: BulkOperationService = Depends(get_bulk_service),
):
    """Item errors of an operation grouped by message and code."""
    await _visible_snapshot(service, operation_id, admin)
    analysis = await service.error_analysis(operation_id)
    if analysis is None:
        raise api_error(404, E.NO_ERRORS_TO_ANALYZE)
    return ErrorAnalysis(**analysis)
