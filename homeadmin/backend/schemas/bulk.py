"""Schemas for bulk operations."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from homeadmin.backend.schemas.common import CamelModel


class BulkOptions(CamelModel):
    """Execution options for a bulk request."""
    batch_size: Optional[int] = Field(default=None, ge=1)


class BulkOperationRequest(CamelModel):
    """Request to validate or run a bulk operation.

    List length and id contents are checked by the validator so that an
    oversized request yields a readable rejection instead of a 422.
    """
    type: str
    entity_type: str
    entity_ids: List[str]
    data: Optional[Dict[str, Any]] = None
    options: Optional[BulkOptions] = None
    confirmed: bool = False

    @property
    def batch_size(self) -> Optional[int]:
        return self.options.batch_size if self.options else None


class ValidationSummary(CamelModel):
    type: str
    entity_type: str
    item_count: int
    batch_size: int
    estimated_batches: int
    estimated_duration_seconds: float
    risk_level: Optional[str] = None
    requires_confirmation: bool


class ValidationResponse(CamelModel):
    valid: bool
    summary: Optional[ValidationSummary] = None
    error: Optional[str] = None


class SubmitResponse(CamelModel):
    operation_id: str


class ProgressCounts(CamelModel):
    total: int
    processed: int
    failed: int
    percentage: int


class ItemErrorOut(CamelModel):
    """Failure of a single entity within an operation."""
    entity_id: str
    error_message: str
    error_code: Optional[str] = None


class ActorOut(CamelModel):
    id: str
    username: str


class ProgressSnapshot(CamelModel):
    """Point-in-time view of a bulk operation."""
    id: str
    type: str
    entity_type: str
    status: str
    progress: ProgressCounts
    errors: List[ItemErrorOut] = []
    current_batch: int
    total_batches: int
    batch_size: int
    cancel_requested: bool
    error: Optional[str] = None
    requested_by: ActorOut
    created_at: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: float


class CancelResponse(CamelModel):
    accepted: bool
    status: str


class OperationDescriptorOut(CamelModel):
    type: str
    label: str
    description: str
    requires_confirmation: bool
    risk_level: str
    supported_entities: List[str]
    items_per_minute: int


class SupportedOperationsResponse(CamelModel):
    entity_type: str
    operations: List[OperationDescriptorOut]


class ErrorAnalysis(CamelModel):
    """Grouped item errors of one operation."""
    operation_id: str
    total_errors: int
    errors_by_type: Dict[str, int]
    errors_by_code: Dict[str, int]
    common_patterns: List[str]
    recommendations: List[str]


class SafetyLimits(CamelModel):
    max_items: int
    default_batch_size: int
    max_batch_size: int
    batch_delay_ms: int
    confirm_threshold: int
    operation_timeout_seconds: float
    items_per_minute: Dict[str, int]


class SafetyFeatures(CamelModel):
    throughput_enforced: bool
    batch_processing_enabled: bool
    rollback_supported: bool
    audit_logging_enabled: bool
    confirmation_required_for_risky_operations: bool
    admin_protection_enabled: bool
    per_admin_item_quota_enabled: bool


class CommonError(CamelModel):
    error: str
    count: int


class RecentActivity(CamelModel):
    window_hours: int
    total_operations: int
    failed_operations: int
    items_processed: int
    items_failed: int
    success_rate: Optional[float] = None
    most_common_errors: List[CommonError]


class AuditHealth(CamelModel):
    consecutive_failures: int


class SafetyMetrics(CamelModel):
    """Limits in force and recent bulk activity."""
    limits: SafetyLimits
    safety_features: SafetyFeatures
    recent_activity: RecentActivity
    audit: AuditHealth
