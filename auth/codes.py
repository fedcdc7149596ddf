"""
auth/codes.py -- Single-use verification codes for activation and recovery.

A code is secrets.token_urlsafe(32): 32 random bytes, 256 bits of entropy,
43 URL-safe characters. It travels in a link (?code=...) and is looked up
by exact match through the unique index.

Lifecycle:
  issue_code()    -> stored active, tagged ACTIVATE or RECOVER
  consume_code()  -> TrustStore.consume_code() flips it inactive and applies
                     the effect in one commit. A second consumption is
                     CodeAlreadyConsumed, never CodeNotFound.

Recovery is deferred: consuming a RECOVER code changes no password. It only
authorizes one explicit reset_password() with a new secret and its
confirmation. redeem_recovery() is the /reset-pass flow that does both, and
checks the pair before consuming so a typo does not burn the code.
"""

from __future__ import annotations

import logging
import secrets

from auth.errors import ResourceNotFound, ValidationError
from auth.models import CodeOutcome, CodePurpose, VerificationCode
from auth.store import TrustStore
from auth.tokens import hash_password

logger = logging.getLogger("crowdcontrol.auth")

_CODE_BYTES = 32


def generate_code() -> str:
    return secrets.token_urlsafe(_CODE_BYTES)


class VerificationCodeManager:
    def __init__(self, store: TrustStore) -> None:
        self._store = store

    def issue_code(self, account_id: int, purpose: CodePurpose) -> str:
        """Create and persist an active code for account_id. Returns the raw code."""
        if self._store.get_account(account_id) is None:
            raise ResourceNotFound("User not found.")
        code = generate_code()
        self._store.create_code(VerificationCode(code=code, purpose=CodePurpose(purpose), account_id=account_id))
        logger.info("Issued %s code for account %d", CodePurpose(purpose).value, account_id)
        return code

    def consume_code(self, code: str, expected_purpose: CodePurpose | None = None) -> CodeOutcome:
        outcome = self._store.consume_code(code, expected_purpose)
        logger.info("Consumed %s code for account %d", outcome.purpose.value, outcome.account_id)
        return outcome

    def reset_password(self, account_id: int, new_secret: str | None, confirm_secret: str | None) -> None:
        _check_new_secret(new_secret, confirm_secret)
        if not self._store.update_account(account_id, hashed_password=hash_password(new_secret)):
            raise ResourceNotFound("User not found.")
        logger.info("Password reset for account %d", account_id)

    def redeem_recovery(self, code: str, new_secret: str | None, confirm_secret: str | None) -> int:
        """Consume a RECOVER code and set the new password. Returns the account id."""
        _check_new_secret(new_secret, confirm_secret)
        outcome = self.consume_code(code, CodePurpose.RECOVER)
        self.reset_password(outcome.account_id, new_secret, confirm_secret)
        return outcome.account_id


def _check_new_secret(new_secret: str | None, confirm_secret: str | None) -> None:
    if not new_secret or not confirm_secret or new_secret != confirm_secret:
        raise ValidationError("New password and confirm password do not match.")
