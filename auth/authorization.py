"""
auth/authorization.py -- Capability evaluation.

The whole access-control algebra is one two-clause OR:

    allowed = general in caps  or  (self in caps and caller == owner)

Every protected operation is an AccessPolicy(general, self_scope). Either
token may be None, which means that branch can never be satisfied.

Capabilities come from the account's role. An account with no role (or whose
role has gone) has the empty set: unassigned means no access, never full
access.

AuthContext is the explicit "who is calling" value built once per request by
auth/dependencies.py and passed to whatever needs it. There is no ambient or
thread-local current user.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from auth.models import Account, Role
from auth.permissions import ADMIN_ROLE_NAME, Permission


def capabilities_of(account: Account, role: Role | None) -> frozenset[Permission]:
    """Return the permission set granted to account by its assigned role."""
    if account.role_id is None or role is None or role.id != account.role_id:
        return frozenset()
    return role.permissions


def is_authorized(
    capabilities: frozenset[Permission],
    caller_id: int,
    resource_owner_id: int | None,
    required_general: Permission | None,
    required_self: Permission | None,
) -> bool:
    if required_general is not None and required_general in capabilities:
        return True
    return (
        required_self is not None
        and required_self in capabilities
        and resource_owner_id is not None
        and caller_id == resource_owner_id
    )


@dataclass(frozen=True)
class AccessPolicy:
    general: Permission | None = None
    self_scope: Permission | None = None


@dataclass(frozen=True)
class AuthContext:
    account_id: int
    email: str
    role_name: str | None = None
    capabilities: frozenset[Permission] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role_name == ADMIN_ROLE_NAME

    def can(self, policy: AccessPolicy, owner_id: int | None = None) -> bool:
        return is_authorized(self.capabilities, self.account_id, owner_id, policy.general, policy.self_scope)


# ---------------------------------------------------------------------------
# Route policies
# ---------------------------------------------------------------------------

LIST_USERS = AccessPolicy(general=Permission.READ_GENERAL)
READ_USER = AccessPolicy(general=Permission.READ_GENERAL, self_scope=Permission.READ_SELF)
CREATE_USER = AccessPolicy(general=Permission.CREATE_USER_GENERAL)
# E-mail and password changes. Role and enabled changes need MANAGE_USER;
# lock changes need the ADMIN role (see api/routes/v1/users.py).
UPDATE_USER = AccessPolicy(general=Permission.UPDATE_GENERAL, self_scope=Permission.UPDATE_SELF)
MANAGE_USER = AccessPolicy(general=Permission.UPDATE_GENERAL)
DELETE_USER = AccessPolicy(general=Permission.DELETE_GENERAL)

READ_ROLE = AccessPolicy(general=Permission.READ_GENERAL)
CREATE_ROLE = AccessPolicy(general=Permission.CREATE_ROLE_GENERAL)
UPDATE_ROLE = AccessPolicy(general=Permission.UPDATE_GENERAL)
DELETE_ROLE = AccessPolicy(general=Permission.DELETE_GENERAL)
