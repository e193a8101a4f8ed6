"""Tests for homeadmin.backend.core.security and api.deps: JWT tokens and permissions."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from homeadmin.backend.api.deps import AdminUser, get_client_ip, get_current_admin, require_permission
from homeadmin.backend.core.config import get_web_settings
from homeadmin.backend.core.rbac import BULK_EXECUTE, parse_permission, permissions_for
from homeadmin.backend.core.security import decode_token


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _issue_token(subject, username, role="admin", permissions=(), token_type="access", expires_in=30):
    """Mint a token the way the platform auth service does."""
    settings = get_web_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "username": username,
        "role": role,
        "permissions": sorted(permissions),
        "exp": int((now + timedelta(minutes=expires_in)).timestamp()),
        "iat": int(now.timestamp()),
        "type": token_type,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


class TestJWTTokens:
    """JWT token creation and validation."""

    def test_decode_valid_access_token(self):
        token = _issue_token("42", "alice", role="support", permissions=["bulk:suspend"])
        payload = decode_token(token)
        assert payload["sub"] == "42"
        assert payload["username"] == "alice"
        assert payload["role"] == "support"
        assert payload["permissions"] == ["bulk:suspend"]
        assert payload["type"] == "access"
        assert payload["exp"] > payload["iat"]

    def test_decode_invalid_token(self):
        assert decode_token("invalid.token.here") is None

    def test_decode_empty_token(self):
        assert decode_token("") is None

    def test_decode_expired_token(self):
        assert decode_token(_issue_token("42", "alice", expires_in=-1)) is None


class TestRbac:
    """Role defaults and explicit grants."""

    def test_parse_permission(self):
        assert parse_permission("bulk:delete") == ("bulk", "delete")

    def test_parse_malformed(self):
        assert parse_permission("bulk") is None

    def test_support_defaults(self):
        perms = permissions_for("support")
        assert BULK_EXECUTE in perms
        assert ("bulk", "delete") not in perms

    def test_extra_grants(self):
        perms = permissions_for("support", ["bulk:delete", "garbage"])
        assert ("bulk", "delete") in perms

    def test_unknown_role_has_nothing(self):
        assert permissions_for("intern") == set()


class TestAdminUser:
    """Permission checks on the authenticated admin."""

    def test_superadmin_bypasses(self):
        admin = AdminUser(id="1", role="superadmin")
        assert admin.has_permission("bulk", "delete")
        assert admin.can_run("suspend")

    def test_execute_all_grants_every_type(self):
        admin = AdminUser(id="2", role="support", permissions={("bulk", "execute_all")})
        assert admin.can_run("delete")

    def test_type_specific_permission(self):
        admin = AdminUser(id="3", role="support", permissions=permissions_for("support"))
        assert admin.can_run("activate")
        assert not admin.can_run("suspend")

    def test_actor(self):
        actor = AdminUser(id="9", username="zed").actor
        assert actor.id == "9"
        assert actor.username == "zed"


class TestGetCurrentAdmin:
    """Token to AdminUser resolution."""

    @pytest.mark.asyncio
    async def test_valid_token(self):
        token = _issue_token("5", "erin", role="manager", permissions=["bulk:cancel_any"])
        admin = await get_current_admin(_credentials(token))
        assert admin.id == "5"
        assert admin.username == "erin"
        assert admin.has_permission("bulk", "suspend")
        assert admin.has_permission("bulk", "cancel_any")

    @pytest.mark.asyncio
    async def test_invalid_token(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_admin(_credentials("garbage"))
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_non_access_token_rejected(self):
        token = _issue_token("5", "erin", token_type="refresh")
        with pytest.raises(HTTPException) as exc:
            await get_current_admin(_credentials(token))
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_require_permission_denies(self):
        check = require_permission("bulk", "execute")
        with pytest.raises(HTTPException) as exc:
            await check(AdminUser(id="4", role="viewer", permissions=permissions_for("viewer")))
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_require_permission_allows(self):
        check = require_permission("bulk", "execute")
        admin = AdminUser(id="4", role="support", permissions=permissions_for("support"))
        assert await check(admin) is admin


class _FakeClient:
    host = "192.168.1.10"


class _FakeRequest:
    def __init__(self, headers=None):
        self.headers = headers or {}
        self.client = _FakeClient()


class TestClientIp:
    """Client IP extraction."""

    def test_forwarded_header(self):
        assert get_client_ip(_FakeRequest({"x-forwarded-for": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"

    def test_direct_client(self):
        assert get_client_ip(_FakeRequest()) == "192.168.1.10"
