"""Static table of supported bulk operation types."""
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple

ENTITY_TYPES: Tuple[str, ...] = ("user", "subscription", "booking", "serviceRequest")

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"


@dataclass(frozen=True)
class OperationDescriptor:
    """Describes one bulk action and where it may be applied."""

    type: str
    label: str
    description: str
    requires_confirmation: bool
    risk_level: str
    supported_entities: Tuple[str, ...]
    items_per_minute: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["supported_entities"] = list(self.supported_entities)
        return data


OPERATIONS: Tuple[OperationDescriptor, ...] = (
    OperationDescriptor(
        type="delete",
        label="Delete",
        description="Permanently delete selected items",
        requires_confirmation=True,
        risk_level=RISK_HIGH,
        supported_entities=ENTITY_TYPES,
        items_per_minute=100,
    ),
    OperationDescriptor(
        type="update",
        label="Update",
        description="Update selected items with new data",
        requires_confirmation=False,
        risk_level=RISK_MEDIUM,
        supported_entities=ENTITY_TYPES,
        items_per_minute=500,
    ),
    OperationDescriptor(
        type="activate",
        label="Activate",
        description="Activate selected items",
        requires_confirmation=False,
        risk_level=RISK_LOW,
        supported_entities=("user", "subscription"),
        items_per_minute=1000,
    ),
    OperationDescriptor(
        type="deactivate",
        label="Deactivate",
        description="Deactivate selected items",
        requires_confirmation=False,
        risk_level=RISK_MEDIUM,
        supported_entities=("user", "subscription"),
        items_per_minute=300,
    ),
    OperationDescriptor(
        type="suspend",
        label="Suspend",
        description="Suspend selected items",
        requires_confirmation=True,
        risk_level=RISK_HIGH,
        supported_entities=("user", "subscription"),
        items_per_minute=200,
    ),
)

_BY_TYPE = {op.type: op for op in OPERATIONS}


def get_operation(op_type: str) -> Optional[OperationDescriptor]:
    """Look up a descriptor by operation type."""
    return _BY_TYPE.get(op_type)


def list_operations(entity_type: str) -> List[OperationDescriptor]:
    """Operations applicable to an entity type. Unknown types yield an empty list."""
    return [op for op in OPERATIONS if entity_type in op.supported_entities]


def is_supported(op_type: str, entity_type: str) -> bool:
    op = _BY_TYPE.get(op_type)
    return op is not None and entity_type in op.supported_entities


def batch_size_for(
    op_type: str,
    requested: Optional[int],
    default: int,
    maximum: int,
) -> int:
    """Resolve the batch size for an operation.

    The per-minute figure of the descriptor caps the batch size; a caller
    may ask for smaller batches but never above the configured maximum.
    """
    size = requested if requested and requested > 0 else default
    size = min(size, maximum)
    op = _BY_TYPE.get(op_type)
    if op is not None:
        size = min(size, op.items_per_minute)
    return max(size, 1)


def severity_for(op_type: str, count: int) -> str:
    """Audit severity derived from operation type and item count."""
    if op_type == "delete" and count > 100:
        return RISK_HIGH
    if op_type == "delete" and count > 10:
        return RISK_MEDIUM
    if count > 500:
        return RISK_MEDIUM
    return RISK_LOW
