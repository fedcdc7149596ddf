"""
auth/locks.py -- Per-account lock state.

Two states, UNLOCKED (initial) and LOCKED, stored on the account row.

  UNLOCKED -> LOCKED    lock(): administrator action, or the failed-login
                        policy in record_failed_login() once
                        Settings.lockout_threshold consecutive failures pile up.
  LOCKED -> UNLOCKED    unlock(): administrator action only. There is no
                        self-service path; code consumption and password
                        resets leave the lock alone.

The Authenticator consults is_locked() after credentials match; a locked
account is refused no matter how correct the secret was.
"""

from __future__ import annotations

import logging

from auth.errors import ResourceNotFound
from auth.store import TrustStore

logger = logging.getLogger("crowdcontrol.auth")


class LockGuard:
    def __init__(self, store: TrustStore, lockout_threshold: int = 0) -> None:
        self._store = store
        self.lockout_threshold = lockout_threshold

    def is_locked(self, account_id: int) -> bool:
        account = self._store.get_account(account_id)
        if account is None:
            raise ResourceNotFound("User not found.")
        return account.is_locked

    def lock(self, account_id: int) -> None:
        if not self._store.set_locked(account_id, True):
            raise ResourceNotFound("User not found.")
        logger.warning("Account %d locked by administrator", account_id)

    def unlock(self, account_id: int) -> None:
        if not self._store.set_locked(account_id, False):
            raise ResourceNotFound("User not found.")
        logger.info("Account %d unlocked", account_id)

    def record_failed_login(self, account_id: int) -> bool:
        """Count a failed sign-in. Returns True if the policy just locked the account."""
        locked = self._store.record_failed_login(account_id, self.lockout_threshold)
        if locked:
            logger.warning(
                "Account %d locked after %d failed sign-in attempts", account_id, self.lockout_threshold
            )
        return locked

    def record_successful_login(self, account_id: int) -> None:
        self._store.update_account(account_id, failed_logins=0)
