"""Shared configuration for process-wide infrastructure.

Contains ONLY fields needed by shared modules (database pool). The web
backend has its own extended settings class for API-specific configuration.
"""
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(_BASE_DIR / ".env")


class SharedSettings(BaseSettings):
    """Settings shared by every process that talks to the database."""

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Database
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    db_pool_min_size: int = Field(default=2, alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(default=10, alias="DB_POOL_MAX_SIZE")
    db_command_timeout: float = Field(default=30.0, alias="DB_COMMAND_TIMEOUT")

    @property
    def database_enabled(self) -> bool:
        return bool(self.database_url)

    model_config = SettingsConfigDict(
        env_file=_BASE_DIR / ".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )


@lru_cache
def get_shared_settings() -> SharedSettings:
    return SharedSettings()
