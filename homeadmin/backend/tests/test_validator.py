"""Tests for homeadmin.backend.core.bulk.validator: request validation and summaries."""
import pytest

from homeadmin.backend.core.bulk.validator import (
    TOO_MANY_ITEMS,
    BulkLimits,
    BulkValidator,
    validate_update_data,
)
from homeadmin.backend.core.entities import InMemoryEntityRepository


@pytest.fixture()
def validator(repository):
    return BulkValidator(repository, BulkLimits())


class TestLimits:
    """Item count limits."""

    @pytest.mark.asyncio
    async def test_too_many_items(self, validator):
        ids = [f"u{i}" for i in range(1000)]
        result = await validator.validate("activate", "user", ids)
        assert result.valid is False
        assert result.error == TOO_MANY_ITEMS

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_not_rejected_for_size(self):
        ids = [f"x{i}" for i in range(500)]
        repo = InMemoryEntityRepository({"user": [{"id": i, "role": "CUSTOMER"} for i in ids]})
        result = await BulkValidator(repo, BulkLimits()).validate("activate", "user", ids)
        assert result.valid is True
        assert result.summary["item_count"] == 500

    @pytest.mark.asyncio
    async def test_empty_ids(self, validator):
        result = await validator.validate("activate", "user", [])
        assert result.valid is False
        assert "non-empty" in result.error

    @pytest.mark.asyncio
    async def test_blank_id(self, validator):
        result = await validator.validate("activate", "user", ["u1", ""])
        assert result.valid is False


class TestRegistryChecks:
    """Entity and operation type checks."""

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, validator):
        result = await validator.validate("delete", "spaceship", ["x"])
        assert result.valid is False
        assert "entity type" in result.error

    @pytest.mark.asyncio
    async def test_unknown_operation_type(self, validator):
        result = await validator.validate("explode", "user", ["u1"])
        assert result.valid is False
        assert "operation type" in result.error

    @pytest.mark.asyncio
    async def test_operation_not_supported_for_entity(self, validator):
        result = await validator.validate("activate", "booking", ["b1"])
        assert result.valid is False
        assert "not supported" in result.error

    @pytest.mark.asyncio
    async def test_permission_denied(self, validator):
        result = await validator.validate("delete", "user", ["u1"], is_allowed=lambda op: op != "delete")
        assert result.valid is False
        assert "permissions" in result.error.lower()


class TestExistence:
    """Missing entity handling."""

    @pytest.mark.asyncio
    async def test_missing_entity_rejected(self, validator):
        result = await validator.validate("activate", "user", ["u1", "ghost"])
        assert result.valid is False
        assert "ghost" in result.error
        assert result.missing_ids == ["ghost"]

    @pytest.mark.asyncio
    async def test_missing_entity_allowed_without_existence_check(self, validator):
        result = await validator.validate("activate", "user", ["u1", "ghost"], check_existence=False)
        assert result.valid is True
        assert result.missing_ids == ["ghost"]


class TestAdminProtection:
    """Admin accounts are shielded from destructive actions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("op_type", ["delete", "suspend", "deactivate"])
    async def test_destructive_ops_reject_admins(self, validator, op_type):
        result = await validator.validate(op_type, "user", ["u1", "admin1"], confirmed=True)
        assert result.valid is False
        assert "admin1" in result.error

    @pytest.mark.asyncio
    async def test_activate_admin_allowed(self, validator):
        result = await validator.validate("activate", "user", ["admin1"])
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_update_restricted_admin_field(self, validator):
        result = await validator.validate("update", "user", ["admin1"], data={"is_active": False})
        assert result.valid is False

    @pytest.mark.asyncio
    async def test_update_harmless_admin_field(self, validator):
        result = await validator.validate("update", "user", ["admin1"], data={"name": "Root"})
        assert result.valid is True


class TestConfirmation:
    """Confirmation is enforced only when a flag is supplied."""

    @pytest.mark.asyncio
    async def test_preview_reports_requirement(self, validator):
        result = await validator.validate("delete", "user", ["u1"])
        assert result.valid is True
        assert result.summary["requires_confirmation"] is True

    @pytest.mark.asyncio
    async def test_submission_without_confirmation(self, validator):
        result = await validator.validate("delete", "user", ["u1"], confirmed=False)
        assert result.valid is False
        assert result.confirmation_required is True
        assert result.summary is not None

    @pytest.mark.asyncio
    async def test_submission_with_confirmation(self, validator):
        result = await validator.validate("delete", "user", ["u1"], confirmed=True)
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_large_operation_needs_confirmation(self, validator):
        ids = [f"id{i}" for i in range(150)]
        result = await validator.validate("activate", "user", ids, confirmed=False, check_existence=False)
        assert result.valid is False
        assert result.confirmation_required is True


class TestSummary:
    """Deterministic preview figures."""

    def test_batches_and_duration(self, validator):
        summary = validator.summarize("update", "user", 120)
        assert summary["batch_size"] == 50
        assert summary["estimated_batches"] == 3
        assert summary["estimated_duration_seconds"] == 6.0
        assert summary["risk_level"] == "medium"
        assert summary["requires_confirmation"] is True

    def test_custom_batch_size(self, validator):
        summary = validator.summarize("activate", "user", 10, batch_size=4)
        assert summary["batch_size"] == 4
        assert summary["estimated_batches"] == 3
        assert summary["requires_confirmation"] is False

    def test_summary_is_deterministic(self, validator):
        assert validator.summarize("delete", "booking", 42) == validator.summarize("delete", "booking", 42)


class TestUpdateData:
    """Update payload rules."""

    def test_empty_payload(self):
        assert validate_update_data("user", {}) is not None

    def test_protected_field(self):
        assert "protected" in validate_update_data("user", {"id": "x"})

    def test_unknown_field(self):
        assert "Unknown fields" in validate_update_data("booking", {"colour": "red"})

    def test_admin_role_escalation(self):
        assert "admin role" in validate_update_data("user", {"role": "admin"})

    def test_bad_email(self):
        assert "email" in validate_update_data("user", {"email": "not-an-email"})

    def test_good_email(self):
        assert validate_update_data("user", {"email": "new@example.com"}) is None

    def test_bad_subscription_status(self):
        assert "status" in validate_update_data("subscription", {"status": "FROZEN"})

    def test_valid_subscription_status(self):
        assert validate_update_data("subscription", {"status": "CANCELLED"}) is None

    @pytest.mark.asyncio
    async def test_validator_rejects_bad_update(self, validator):
        result = await validator.validate("update", "user", ["u1"], data={"role": "ADMIN"})
        assert result.valid is False
