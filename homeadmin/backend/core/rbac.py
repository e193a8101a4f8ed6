"""Role-based access control for admin accounts.

Permissions are (resource, action) pairs. Roles carry a default grant set;
tokens may add explicit grants on top of it.
"""
import logging
from typing import Iterable, Set, Tuple

logger = logging.getLogger(__name__)

Permission = Tuple[str, str]

# Bulk permission actions
BULK_EXECUTE = ("bulk", "execute")
BULK_EXECUTE_ALL = ("bulk", "execute_all")
BULK_CANCEL_ANY = ("bulk", "cancel_any")
BULK_VIEW_ALL = ("bulk", "view_all")

_VIEWER: Set[Permission] = {
    ("users", "view"),
    ("subscriptions", "view"),
    ("bookings", "view"),
    ("audit", "view"),
}

_SUPPORT: Set[Permission] = _VIEWER | {
    BULK_EXECUTE,
    ("bulk", "activate"),
    ("bulk", "deactivate"),
    ("bulk", "update"),
}

_MANAGER: Set[Permission] = _SUPPORT | {
    ("bulk", "suspend"),
    ("bulk", "delete"),
    BULK_VIEW_ALL,
}

ROLE_PERMISSIONS: dict[str, Set[Permission]] = {
    "viewer": _VIEWER,
    "support": _SUPPORT,
    "manager": _MANAGER,
    # superadmin bypasses checks entirely, see AdminUser.has_permission
    "superadmin": set(),
}


def parse_permission(value: str) -> Permission | None:
    """Parse a "resource:action" string into a tuple."""
    resource, sep, action = value.partition(":")
    if not sep or not resource or not action:
        logger.debug("Ignoring malformed permission %r", value)
        return None
    return resource.strip(), action.strip()


def permissions_for(role: str, extra: Iterable[str] = ()) -> Set[Permission]:
    """Resolve the effective permission set for a role plus explicit grants."""
    perms = set(ROLE_PERMISSIONS.get(role, set()))
    for raw in extra:
        parsed = parse_permission(raw)
        if parsed:
            perms.add(parsed)
    return perms
