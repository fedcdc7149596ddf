"""
auth/accounts.py -- Account lifecycle: create, read, update, delete.

Accounts are created disabled and unlocked. They become usable once an
ACTIVATE code is consumed (auth/codes.py). Which fields a caller may touch is
decided by the route's AccessPolicy, not here; this service only enforces the
record-level rules:

  - e-mail is unique (NameAlreadyTaken) and must look like an address
  - a password change needs the current password and a matching confirmation
  - role changes go through RoleCapacityEnforcer so the membership cap holds,
    together with the other field writes
  - lock changes go through LockGuard
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.exc import IntegrityError

from auth.errors import NameAlreadyTaken, ResourceNotFound, ValidationError
from auth.locks import LockGuard
from auth.models import Account
from auth.roles import RoleCapacityEnforcer
from auth.store import TrustStore
from auth.tokens import hash_password, verify_password

logger = logging.getLogger("crowdcontrol.auth")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_EMAIL_RE = re.compile(EMAIL_PATTERN)

MIN_PASSWORD_LENGTH = 8


def _check_email(email: str) -> str:
    email = (email or "").strip()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid e-mail address.")
    return email


def _check_password(password: str | None) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return password


def new_account(email: str, password: str, first_name: str = "", last_name: str = "") -> Account:
    """Build an unsaved, disabled Account with a hashed password."""
    return Account(
        email=_check_email(email),
        hashed_password=hash_password(_check_password(password)),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
    )


class AccountService:
    def __init__(self, store: TrustStore, roles: RoleCapacityEnforcer, locks: LockGuard) -> None:
        self._store = store
        self._roles = roles
        self._locks = locks

    def create_account(self, email: str, password: str, first_name: str = "", last_name: str = "") -> int:
        account = new_account(email, password, first_name, last_name)
        if self._store.get_account_by_email(account.email) is not None:
            raise NameAlreadyTaken("E-mail already registered.")
        try:
            account_id = self._store.create_account(account)
        except IntegrityError:
            raise NameAlreadyTaken("E-mail already registered.") from None
        logger.info("Account %d created", account_id)
        return account_id

    def get_account(self, account_id: int) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise ResourceNotFound("User not found.")
        return account

    def list_accounts(self) -> list[Account]:
        return self._store.list_accounts()

    def update_account(
        self,
        account_id: int,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        old_password: str | None = None,
        new_password: str | None = None,
        confirm_password: str | None = None,
        role_name: str | None = None,
        is_enabled: bool | None = None,
        is_locked: bool | None = None,
    ) -> Account:
        """Apply the given changes. Fields left as None are not touched.

        Validation runs before any write. A role change and the field writes
        share one transaction, so a full role or a taken e-mail leaves the
        record unchanged.
        """
        account = self.get_account(account_id)
        fields: dict = {}

        if email is not None:
            email = _check_email(email)
            if email != account.email:
                other = self._store.get_account_by_email(email)
                if other is not None:
                    raise NameAlreadyTaken("E-mail already registered.")
                fields["email"] = email
        if first_name is not None:
            fields["first_name"] = first_name.strip()
        if last_name is not None:
            fields["last_name"] = last_name.strip()

        if new_password is not None:
            if not old_password or not verify_password(old_password, account.hashed_password):
                raise ValidationError("Old password is incorrect.")
            if new_password != confirm_password:
                raise ValidationError("New password and confirm password do not match.")
            fields["hashed_password"] = hash_password(_check_password(new_password))

        if is_enabled is not None:
            fields["is_enabled"] = is_enabled

        role_id = None
        if role_name is not None:
            role = self._roles.get_role_by_name(role_name)
            if role.id != account.role_id:
                role_id = role.id

        try:
            if role_id is not None:
                self._roles.assign_role(account_id, role_id, fields)
            elif fields:
                self._store.update_account(account_id, **fields)
        except IntegrityError:
            raise NameAlreadyTaken("E-mail already registered.") from None

        if is_locked is not None and is_locked != account.is_locked:
            if is_locked:
                self._locks.lock(account_id)
            else:
                self._locks.unlock(account_id)

        return self.get_account(account_id)

    def delete_account(self, account_id: int) -> None:
        if not self._store.delete_account(account_id):
            raise ResourceNotFound("User not found.")
        logger.info("Account %d deleted", account_id)
