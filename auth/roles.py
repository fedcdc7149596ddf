"""
auth/roles.py -- Role lifecycle and membership caps.

assign_role() is the capacity check. The count-compare-write sequence runs in
TrustStore.assign_role() inside one serialized transaction, so two concurrent
assignments against a role with one free slot cannot both succeed.

The ADMIN role is special:
  - created only by bootstrap_admin(), once, with the full permission set and
    room for one member;
  - create_role() and update_role() refuse the ADMIN name and refuse to grant
    the full set to any other role;
  - its permissions cannot be edited and it cannot be deleted, which would
    re-open the bootstrap.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError

from auth.errors import NameAlreadyTaken, ResourceNotFound, ValidationError
from auth.models import Account, Role
from auth.permissions import ADMIN_ROLE_NAME, FULL_PERMISSIONS, parse_permissions
from auth.store import TrustStore

logger = logging.getLogger("crowdcontrol.auth")


class RoleCapacityEnforcer:
    def __init__(self, store: TrustStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_role(self, role_id: int) -> Role:
        role = self._store.get_role(role_id)
        if role is None:
            raise ResourceNotFound("Role not found.")
        return role

    def get_role_by_name(self, name: str) -> Role:
        role = self._store.get_role_by_name(name)
        if role is None:
            raise ResourceNotFound("Role not found.")
        return role

    def list_roles(self) -> list[Role]:
        return self._store.list_roles()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Persist a new role. Returns its id.

        NameAlreadyTaken if the name exists (checked first, then backed by
        the unique constraint for the concurrent case).
        """
        if role.name == ADMIN_ROLE_NAME:
            raise NameAlreadyTaken("Role name already taken.")
        _reject_full_set(role.permissions)
        if self._store.get_role_by_name(role.name) is not None:
            raise NameAlreadyTaken("Role name already taken.")
        try:
            role_id = self._store.create_role(role)
        except IntegrityError:
            raise NameAlreadyTaken("Role name already taken.") from None
        logger.info("Role %s created (max %d members)", role.name, role.max_members)
        return role_id

    def update_role(
        self,
        role_id: int,
        max_members: int | None = None,
        permission_names: Iterable[str] | None = None,
    ) -> Role:
        role = self.get_role(role_id)
        if max_members is not None and max_members < 0:
            raise ValidationError("Maximum number of users may not be negative.")
        permissions = parse_permissions(permission_names) if permission_names is not None else None
        if permissions is not None:
            if role.name == ADMIN_ROLE_NAME:
                if permissions != FULL_PERMISSIONS:
                    raise ValidationError("The ADMIN role's permissions cannot be changed.")
            else:
                _reject_full_set(permissions)
        self._store.update_role(role_id, max_members=max_members, permissions=permissions)
        return self.get_role(role_id)

    def delete_role(self, role_id: int) -> None:
        """Delete a role after clearing the role reference of every member."""
        role = self.get_role(role_id)
        if role.name == ADMIN_ROLE_NAME:
            raise ValidationError("The ADMIN role cannot be deleted.")
        if not self._store.delete_role(role_id):
            raise ResourceNotFound("Role not found.")
        logger.info("Role %s deleted", role.name)

    def assign_role(self, account_id: int, role_id: int, fields: dict | None = None) -> Role:
        """Give account_id the role, or raise RoleLimitExceeded if it is full.

        fields are other account columns to write in the same transaction.
        """
        role = self._store.assign_role(account_id, role_id, fields)
        logger.info("Account %d assigned role %s", account_id, role.name)
        return role

    def assign_role_by_name(self, account_id: int, role_name: str) -> Role:
        return self.assign_role(account_id, self.get_role_by_name(role_name).id)

    def bootstrap_admin(self, account: Account) -> int:
        """Create the single ADMIN role and its first member. Works once.

        A second call raises ValidationError("Super user already exists.").
        """
        admin_role = Role(name=ADMIN_ROLE_NAME, max_members=1, permissions=FULL_PERMISSIONS)
        try:
            account_id = self._store.bootstrap_admin(account, admin_role)
        except IntegrityError:
            if self._store.get_role_by_name(ADMIN_ROLE_NAME) is not None:
                raise ValidationError("Super user already exists.") from None
            raise NameAlreadyTaken("E-mail already registered.") from None
        logger.info("Super user created (account %d)", account_id)
        return account_id


def _reject_full_set(permissions: frozenset) -> None:
    if permissions == FULL_PERMISSIONS:
        raise ValidationError("Only the ADMIN role may hold every permission.")
