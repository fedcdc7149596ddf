"""
auth/authenticator.py -- Turns a sign-in attempt into a session token.

Order of checks in Authenticator.authenticate():
  1. CredentialVerifier matches identifier + secret. A mismatch is always
     AuthenticationFailed with the same message, whether the e-mail is
     unknown or the secret is wrong.
  2. The account record is loaded. Valid credentials with no record is a
     consistency fault -> AccountRecordMissing, logged at ERROR.
  3. LockGuard: a locked account is refused with AccountLocked even though
     the secret was correct.
  4. Disabled (never activated) accounts are refused with AccountDisabled.
  5. TokenService.issue(email, id).

The verifier is a seam: StoreCredentialVerifier checks bcrypt hashes from
TrustStore, tests and other deployments can plug in their own.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.errors import AccountDisabled, AccountLocked, AccountRecordMissing, AuthenticationFailed, ResourceNotFound
from auth.locks import LockGuard
from auth.store import TrustStore
from auth.tokens import _DUMMY_HASH, TokenService, verify_password

logger = logging.getLogger("crowdcontrol.auth")


class CredentialVerifier(Protocol):
    def verify(self, identifier: str, secret: str) -> bool: ...


class StoreCredentialVerifier:
    """Checks a secret against the bcrypt hash stored for identifier.

    Always runs bcrypt, against _DUMMY_HASH when the e-mail is unknown, so an
    attacker cannot enumerate accounts by timing the response.
    """

    def __init__(self, store: TrustStore) -> None:
        self._store = store

    def verify(self, identifier: str, secret: str) -> bool:
        account = self._store.get_account_by_email(identifier)
        if account is None:
            verify_password(secret, _DUMMY_HASH)
            return False
        return verify_password(secret, account.hashed_password)


class Authenticator:
    def __init__(
        self,
        store: TrustStore,
        tokens: TokenService,
        locks: LockGuard,
        verifier: CredentialVerifier | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._locks = locks
        self._verifier = verifier or StoreCredentialVerifier(store)

    def authenticate(self, identifier: str, secret: str) -> str:
        """Return a session token for valid, unlocked, enabled credentials."""
        if not self._verifier.verify(identifier, secret):
            self._record_failure(identifier)
            raise AuthenticationFailed()

        account = self._store.get_account_by_email(identifier)
        if account is None:
            logger.error("Credentials verified but no account record exists")
            raise AccountRecordMissing()

        try:
            locked = self._locks.is_locked(account.id)
        except ResourceNotFound:
            raise AccountRecordMissing() from None
        if locked:
            logger.info("Sign-in refused for locked account %d", account.id)
            raise AccountLocked()
        if not account.is_enabled:
            raise AccountDisabled()

        if account.failed_logins:
            self._locks.record_successful_login(account.id)
        logger.info("Account %d signed in", account.id)
        return self._tokens.issue(account.email, account.id)

    def _record_failure(self, identifier: str) -> None:
        account = self._store.get_account_by_email(identifier)
        if account is None:
            logger.info("Failed sign-in for unknown identifier")
            return
        logger.info("Failed sign-in for account %d", account.id)
        self._locks.record_failed_login(account.id)
