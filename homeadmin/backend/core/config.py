"""Web backend configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebSettings(BaseSettings):
    """Settings for the admin web backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # App
    debug: bool = Field(default=False, alias="WEB_DEBUG")
    secret_key: str = Field(..., alias="WEB_SECRET_KEY")
    host: str = Field(default="0.0.0.0", alias="WEB_HOST")
    port: int = Field(default=8081, alias="WEB_PORT")

    # JWT
    jwt_algorithm: str = Field(default="HS256", alias="WEB_JWT_ALGORITHM")

    # CORS
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="WEB_CORS_ORIGINS"
    )

    # Database (optional, in-memory storage without it)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # Bulk operations
    bulk_max_items: int = Field(default=500, ge=1, alias="BULK_MAX_ITEMS")
    bulk_default_batch_size: int = Field(default=50, ge=1, alias="BULK_DEFAULT_BATCH_SIZE")
    bulk_max_batch_size: int = Field(default=500, ge=1, alias="BULK_MAX_BATCH_SIZE")
    bulk_batch_delay_ms: int = Field(default=100, ge=0, alias="BULK_BATCH_DELAY_MS")
    bulk_seconds_per_batch: float = Field(default=2.0, ge=0, alias="BULK_SECONDS_PER_BATCH")
    bulk_confirm_threshold: int = Field(default=100, ge=1, alias="BULK_CONFIRM_THRESHOLD")
    bulk_operation_timeout_seconds: float = Field(default=3600.0, gt=0, alias="BULK_OPERATION_TIMEOUT_SECONDS")
    bulk_enforce_throughput: bool = Field(default=False, alias="BULK_ENFORCE_THROUGHPUT")
    bulk_retention_seconds: int = Field(default=86400, ge=0, alias="BULK_RETENTION_SECONDS")  # 0 = keep forever
    bulk_audit_alert_after: int = Field(default=5, ge=1, alias="BULK_AUDIT_ALERT_AFTER")

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def validate_jwt_algorithm(cls, v):
        """Only allow secure HMAC-based JWT algorithms."""
        allowed = {"HS256", "HS384", "HS512"}
        if v not in allowed:
            raise ValueError(f"JWT algorithm must be one of {allowed}, got: {v}")
        return v

    @field_validator("bulk_max_batch_size")
    @classmethod
    def validate_max_batch_size(cls, v, info):
        default = info.data.get("bulk_default_batch_size")
        if default is not None and v < default:
            raise ValueError("BULK_MAX_BATCH_SIZE must not be smaller than BULK_DEFAULT_BATCH_SIZE")
        return v

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins_raw:
            return []
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache()
def get_web_settings() -> WebSettings:
    """Get cached web settings."""
    return WebSettings()
