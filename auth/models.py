"""
auth/models.py -- Domain dataclasses for account trust entities.

Pattern: Data class (pure data container, almost zero logic). Stores and
services do the work.

References between entities are ids, never objects: an Account holds role_id,
a VerificationCode holds account_id. Anything that needs the related record
asks the store for it.

Layer rule: no imports from api/, core/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from auth.errors import ValidationError
from auth.permissions import Permission, parse_permissions


class CodePurpose(str, Enum):
    ACTIVATE = "ACTIVATE"  # flips Account.is_enabled on consumption
    RECOVER = "RECOVER"  # authorizes one explicit password reset


@dataclass
class Account:
    """An identity that can sign in.

    email is the unique login identifier and the session token subject.
    hashed_password is a bcrypt hash; the plaintext never reaches the store.
    role_id is None for unassigned accounts, which hold no capabilities.

    New accounts start disabled and unlocked. is_enabled flips to True once,
    when an ACTIVATE code is consumed. is_locked is independent of is_enabled.
    """

    email: str
    hashed_password: str
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    role_id: int | None = None
    is_enabled: bool = False
    is_locked: bool = False
    failed_logins: int = 0
    created_at: str | None = None


@dataclass
class Role:
    """A named permission set with a membership cap.

    permissions is validated on construction: build a Role from raw names with
    Role.from_names(), which rejects tokens outside the enumeration.
    """

    name: str
    max_members: int
    permissions: frozenset[Permission] = field(default_factory=frozenset)
    id: int | None = None

    def __post_init__(self) -> None:
        self.name = self.name.strip().upper()
        if not self.name:
            raise ValidationError("Role name may not be empty.")
        if self.max_members < 0:
            raise ValidationError("Maximum number of users may not be negative.")
        if not all(isinstance(p, Permission) for p in self.permissions):
            self.permissions = parse_permissions(self.permissions)
        else:
            self.permissions = frozenset(self.permissions)

    @classmethod
    def from_names(cls, name: str, max_members: int, permission_names: list[str], id: int | None = None) -> Role:
        return cls(name=name, max_members=max_members, permissions=parse_permissions(permission_names), id=id)


@dataclass
class VerificationCode:
    """A single-use opaque code binding a purpose to one account."""

    code: str
    purpose: CodePurpose
    account_id: int
    is_active: bool = True
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class CodeOutcome:
    """Result of consuming a verification code.

    reset_authorized is True only for RECOVER codes: the caller may now run
    one explicit password reset for account_id.
    """

    purpose: CodePurpose
    account_id: int
    reset_authorized: bool = False
