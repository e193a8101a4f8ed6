"""API dependencies for the admin backend."""
import logging
from dataclasses import dataclass, field
from typing import Set, Tuple

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from homeadmin.backend.core.bulk.service import BulkOperationService
from homeadmin.backend.core.bulk.store import Actor
from homeadmin.backend.core.rbac import BULK_EXECUTE_ALL, permissions_for
from homeadmin.backend.core.security import decode_token

logger = logging.getLogger(__name__)
security = HTTPBearer()


@dataclass
class AdminUser:
    """Authenticated admin user with RBAC info."""

    id: str
    username: str = "admin"
    role: str = "admin"
    permissions: Set[Tuple[str, str]] = field(default_factory=set)

    @property
    def is_superadmin(self) -> bool:
        return self.role == "superadmin"

    @property
    def actor(self) -> Actor:
        return Actor(id=self.id, username=self.username)

    def has_permission(self, resource: str, action: str) -> bool:
        """Check if this admin has a specific permission. Superadmins have all."""
        return self.is_superadmin or (resource, action) in self.permissions

    def can_run(self, op_type: str) -> bool:
        """Whether this admin may run a given bulk operation type."""
        return self.has_permission("bulk", op_type) or self.has_permission(*BULK_EXECUTE_ALL)


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> AdminUser:
    """Dependency for verifying admin authentication."""
    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("role", "viewer")
    return AdminUser(
        id=str(subject),
        username=payload.get("username") or str(subject),
        role=role,
        permissions=permissions_for(role, payload.get("permissions") or []),
    )


# ── Permission-checking dependency factory ──────────────────────

def require_permission(resource: str, action: str):
    """Create a dependency that checks for a specific permission.

    Usage in endpoint:
        @router.post("/bulk-operations")
        async def submit(admin: AdminUser = Depends(require_permission("bulk", "execute"))):
            ...

    Admins with role "superadmin" bypass checks.
    """
    async def _check(admin: AdminUser = Depends(get_current_admin)) -> AdminUser:
        if not admin.has_permission(resource, action):
            logger.warning(
                "Permission denied: %s (%s) -> %s:%s",
                admin.username, admin.role, resource, action,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {resource}:{action}",
            )
        return admin

    return _check


# ── Utility helpers ─────────────────────────────────────────────

def get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a reverse proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_bulk_service(request: Request) -> BulkOperationService:
    """Dependency for the application's bulk operation service."""
    return request.app.state.bulk_service
