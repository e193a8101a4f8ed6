"""
Database service for PostgreSQL integration.
Owns the asyncpg connection pool and the schema used by the admin backend.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from asyncpg import Pool

from homeadmin.shared.config import get_shared_settings as get_settings

logger = logging.getLogger(__name__)


# SQL schema for creating tables
SCHEMA_SQL = """
-- Customers, staff and admins
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email VARCHAR(255),
    name VARCHAR(255),
    phone VARCHAR(50),
    role VARCHAR(32) NOT NULL DEFAULT 'CUSTOMER',
    status VARCHAR(32) NOT NULL DEFAULT 'ACTIVE',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_users_email ON users(email) WHERE email IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_users_status ON users(status);

-- Service plan subscriptions
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    plan VARCHAR(64),
    status VARCHAR(32) NOT NULL DEFAULT 'ACTIVE',
    next_billing_at TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id);

-- Scheduled visits
CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    status VARCHAR(32) NOT NULL DEFAULT 'SCHEDULED',
    scheduled_at TIMESTAMP WITH TIME ZONE,
    notes TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_bookings_user ON bookings(user_id);

-- Ad-hoc service requests
CREATE TABLE IF NOT EXISTS service_requests (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    status VARCHAR(32) NOT NULL DEFAULT 'PENDING',
    category VARCHAR(64),
    description TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Bulk operation records (retained for history)
CREATE TABLE IF NOT EXISTS bulk_operations (
    id TEXT PRIMARY KEY,
    type VARCHAR(32) NOT NULL,
    entity_type VARCHAR(32) NOT NULL,
    entity_ids JSONB NOT NULL,
    data JSONB,
    status VARCHAR(16) NOT NULL,
    total INTEGER NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    errors JSONB NOT NULL DEFAULT '[]'::jsonb,
    batch_size INTEGER NOT NULL,
    current_batch INTEGER NOT NULL DEFAULT 0,
    total_batches INTEGER NOT NULL,
    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
    error TEXT,
    requested_by JSONB NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    start_time TIMESTAMP WITH TIME ZONE,
    end_time TIMESTAMP WITH TIME ZONE
);

CREATE INDEX IF NOT EXISTS idx_bulk_operations_status ON bulk_operations(status);
CREATE INDEX IF NOT EXISTS idx_bulk_operations_created ON bulk_operations(created_at DESC);

-- Admin audit trail
CREATE TABLE IF NOT EXISTS admin_audit_log (
    id BIGSERIAL PRIMARY KEY,
    admin_id TEXT,
    admin_username VARCHAR(255),
    action VARCHAR(100) NOT NULL,
    resource VARCHAR(50),
    resource_id VARCHAR(255),
    details TEXT,
    severity VARCHAR(16),
    ip_address VARCHAR(64),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_audit_log_resource ON admin_audit_log(resource, resource_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_created ON admin_audit_log(created_at DESC);
"""


class DatabaseService:
    """
    Async database service for PostgreSQL operations.
    Hands out pooled connections to the repositories built on top of it.
    """

    def __init__(self):
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if database connection is established."""
        return self._pool is not None and not self._pool._closed

    async def connect(self, database_url: str = None, max_retries: int = 5, retry_delay: float = 2.0) -> bool:
        """
        Initialize database connection pool with retry logic.
        Returns True if connection successful, False otherwise.

        Args:
            database_url: Optional database URL. If not provided, reads from
                          DATABASE_URL env var or settings.
            max_retries: Maximum number of connection attempts (default 5).
            retry_delay: Initial delay between retries in seconds, doubles each attempt.
        """
        settings = get_settings()
        if not database_url:
            database_url = os.environ.get("DATABASE_URL") or settings.database_url

        if not database_url:
            logger.warning("DATABASE_URL not configured, database features disabled")
            return False

        async with self._lock:
            if self._pool is not None:
                return True

            delay = retry_delay
            for attempt in range(1, max_retries + 1):
                try:
                    logger.debug("Connecting to PostgreSQL (attempt %d/%d)...", attempt, max_retries)
                    self._pool = await asyncpg.create_pool(
                        dsn=database_url,
                        min_size=settings.db_pool_min_size,
                        max_size=settings.db_pool_max_size,
                        command_timeout=settings.db_command_timeout,
                    )
                    await self._init_schema()
                    logger.info("Database connection established")
                    return True

                except (OSError, asyncpg.PostgresError) as e:
                    self._pool = None
                    if attempt < max_retries:
                        logger.warning(
                            "Database connection attempt %d/%d failed: %s. Retrying in %.0fs...",
                            attempt, max_retries, e, delay,
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30)
                    else:
                        logger.error("Failed to connect to database after %d attempts: %s", max_retries, e)
                        return False

        return False

    async def disconnect(self) -> None:
        """Close database connection pool."""
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
                logger.info("Database disconnected")

    async def _init_schema(self) -> None:
        """Initialize database schema (create tables if not exist)."""
        if self._pool is None:
            return

        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
            logger.debug("Database schema initialized")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected")

        async with self._pool.acquire() as conn:
            yield conn


db_service = DatabaseService()
