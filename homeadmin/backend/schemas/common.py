"""Common schemas for the admin API."""
from typing import Generic, List, TypeVar, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaginatedResponse(CamelModel, Generic[T]):
    """Paginated response wrapper."""

    items: List[T]
    total: int
    page: int
    per_page: int
    pages: int


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: Optional[dict] = None
