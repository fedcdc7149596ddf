"""
auth/permissions.py -- The closed permission enumeration.

This defines WHAT a role can grant, not HOW it is checked. The check lives in
auth/authorization.py.

Every token has a scope:
  SELF    -- applies only to resources owned by the caller.
  GENERAL -- applies to every resource of that kind.

Roles store tokens by name. parse_permissions() is the single entry point for
turning untrusted names into Permission members; an unknown name raises
ValidationError naming the offending token, so nothing outside the enum is
ever stored.

Layer rule: no imports from api/, core/ or notify/.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from auth.errors import ValidationError


class Scope(str, Enum):
    SELF = "self"
    GENERAL = "general"


class Permission(str, Enum):
    """Capability tokens a role may hold."""

    # Own account
    READ_SELF = "READ_SELF"
    UPDATE_SELF = "UPDATE_SELF"

    # Creation
    CREATE_USER_GENERAL = "CREATE_USER_GENERAL"
    CREATE_ROLE_GENERAL = "CREATE_ROLE_GENERAL"

    # Profile info
    CREATE_INFO_SELF = "CREATE_INFO_SELF"
    UPDATE_INFO_SELF = "UPDATE_INFO_SELF"

    # Sick notes
    CREATE_SICK_NOTE_SELF = "CREATE_SICK_NOTE_SELF"
    CREATE_SICK_NOTE_GENERAL = "CREATE_SICK_NOTE_GENERAL"
    DELETE_SICK_NOTE_SELF = "DELETE_SICK_NOTE_SELF"

    # Payments
    CREATE_PAYMENT_GENERAL = "CREATE_PAYMENT_GENERAL"
    CREATE_PAYMENT_FOR_ROLE = "CREATE_PAYMENT_FOR_ROLE"

    # Everything else
    READ_GENERAL = "READ_GENERAL"
    UPDATE_GENERAL = "UPDATE_GENERAL"
    DELETE_GENERAL = "DELETE_GENERAL"

    @property
    def scope(self) -> Scope:
        return Scope.SELF if self.value.endswith("_SELF") else Scope.GENERAL


# Role holding the full set. Created once by the bootstrap, never by create_role.
ADMIN_ROLE_NAME = "ADMIN"

FULL_PERMISSIONS: frozenset[Permission] = frozenset(Permission)


def parse_permission(name: str) -> Permission:
    """Return the Permission for a token name (case-insensitive).

    Raises ValidationError for anything outside the enumeration.
    """
    if isinstance(name, Permission):
        return name
    try:
        return Permission(str(name).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid permission: {name}") from None


def parse_permissions(names: Iterable[str]) -> frozenset[Permission]:
    """Validate every name and return the resulting set (duplicates collapse)."""
    return frozenset(parse_permission(n) for n in names)
