"""Schemas for the admin API."""
from homeadmin.backend.schemas.common import (
    CamelModel,
    PaginatedResponse,
    ErrorResponse,
    HealthResponse,
)
from homeadmin.backend.schemas.bulk import (
    BulkOptions,
    BulkOperationRequest,
    ValidationSummary,
    ValidationResponse,
    SubmitResponse,
    ProgressSnapshot,
    CancelResponse,
    OperationDescriptorOut,
    SupportedOperationsResponse,
    ErrorAnalysis,
    SafetyMetrics,
)

__all__ = [
    "CamelModel",
    "PaginatedResponse",
    "ErrorResponse",
    "HealthResponse",
    "BulkOptions",
    "BulkOperationRequest",
    "ValidationSummary",
    "ValidationResponse",
    "SubmitResponse",
    "ProgressSnapshot",
    "CancelResponse",
    "OperationDescriptorOut",
    "SupportedOperationsResponse",
    "ErrorAnalysis",
    "SafetyMetrics",
]
