"""Shared test fixtures for backend tests.

Provides:
- Seeded in-memory entity repository
- Bulk operation service that does not sleep between batches
- FastAPI test app with dependency overrides
- httpx AsyncClient for API testing
- Mock admin users with different roles/permissions
"""
import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Iterable, Optional

import pytest
import pytest_asyncio

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Set required environment variables BEFORE any app imports
os.environ.setdefault("WEB_SECRET_KEY", "test-secret-key-for-unit-tests-only")
os.environ.setdefault("WEB_DEBUG", "true")
os.environ.setdefault("WEB_LOG_DIR", tempfile.mkdtemp(prefix="homeadmin-logs-"))
os.environ.pop("DATABASE_URL", None)

# Clear the lru_cache so test env vars take effect
from homeadmin.backend.core.config import get_web_settings
get_web_settings.cache_clear()

from httpx import ASGITransport, AsyncClient
from homeadmin.backend.api.deps import AdminUser, get_current_admin
from homeadmin.backend.core.bulk.audit import MemoryAuditSink
from homeadmin.backend.core.bulk.service import build_bulk_service
from homeadmin.backend.core.entities import InMemoryEntityRepository
from homeadmin.backend.core.rate_limit import limiter
from homeadmin.backend.core.rbac import permissions_for
from homeadmin.backend.main import create_app


SEED = {
    "user": [
        {"id": "u1", "email": "ann@example.com", "name": "Ann", "role": "CUSTOMER", "status": "ACTIVE"},
        {"id": "u2", "email": "bob@example.com", "name": "Bob", "role": "CUSTOMER", "status": "ACTIVE"},
        {"id": "u3", "email": "cat@example.com", "name": "Cat", "role": "CUSTOMER", "status": "INACTIVE"},
        {"id": "u4", "email": "dan@example.com", "name": "Dan", "role": "TECHNICIAN", "status": "ACTIVE"},
        {"id": "admin1", "email": "root@example.com", "name": "Root", "role": "ADMIN", "status": "ACTIVE"},
    ],
    "subscription": [
        {"id": "s1", "user_id": "u1", "plan": "basic", "status": "ACTIVE"},
        {"id": "s2", "user_id": "u2", "plan": "premium", "status": "INACTIVE"},
    ],
    "booking": [
        {"id": "b1", "user_id": "u1", "status": "SCHEDULED"},
    ],
    "serviceRequest": [
        {"id": "r1", "user_id": "u2", "status": "OPEN", "category": "plumbing"},
    ],
}


async def no_sleep(delay: float) -> None:
    """Yield to the event loop without waiting."""
    await asyncio.sleep(0)


# ── Admin user fixtures ───────────────────────────────────────

def make_admin(
    role: str = "superadmin",
    username: str = "testadmin",
    admin_id: str = "1",
    extra: Iterable[str] = (),
    permissions: Optional[set] = None,
) -> AdminUser:
    """Create a test AdminUser with the role's default permissions."""
    if permissions is None:
        permissions = permissions_for(role, extra)
    return AdminUser(id=admin_id, username=username, role=role, permissions=permissions)


@pytest.fixture()
def admin_factory():
    return make_admin


@pytest.fixture()
def superadmin():
    return make_admin("superadmin", "superadmin_user", admin_id="1")


@pytest.fixture()
def manager():
    return make_admin("manager", "manager_user", admin_id="2")


@pytest.fixture()
def support():
    return make_admin("support", "support_user", admin_id="3")


@pytest.fixture()
def viewer():
    return make_admin("viewer", "viewer_user", admin_id="4")


# ── Service fixtures ─────────────────────────────────────────

@pytest.fixture()
def settings():
    get_web_settings.cache_clear()
    return get_web_settings()


@pytest.fixture()
def repository():
    return InMemoryEntityRepository(SEED)


@pytest.fixture()
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture()
def bulk_service(settings, repository, audit_sink):
    return build_bulk_service(settings, repository=repository, audit_sink=audit_sink, sleep=no_sleep)


# ── App and client fixtures ──────────────────────────────────

@pytest.fixture()
def app(bulk_service):
    """Create a fresh FastAPI app for testing."""
    limiter.reset()
    _app = create_app(bulk_service=bulk_service)
    yield _app
    _app.dependency_overrides.clear()


async def _client_for(app, admin: Optional[AdminUser]):
    if admin is not None:
        app.dependency_overrides[get_current_admin] = lambda: admin
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest_asyncio.fixture()
async def client(app, superadmin):
    """Async HTTP client authenticated as superadmin."""
    async with await _client_for(app, superadmin) as ac:
        yield ac


@pytest_asyncio.fixture()
async def manager_client(app, manager):
    """Async HTTP client authenticated as manager."""
    async with await _client_for(app, manager) as ac:
        yield ac


@pytest_asyncio.fixture()
async def support_client(app, support):
    """Async HTTP client authenticated as support."""
    async with await _client_for(app, support) as ac:
        yield ac


@pytest_asyncio.fixture()
async def viewer_client(app, viewer):
    """Async HTTP client authenticated as viewer."""
    async with await _client_for(app, viewer) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app):
    """Unauthenticated HTTP client."""
    async with await _client_for(app, None) as ac:
        yield ac
