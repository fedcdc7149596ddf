"""
auth/tokens.py -- Session tokens and password hashing.

Security design decisions:
  Session tokens: python-jose JWT with HS256. Three base64url segments
       (header.claims.signature). Claims carry sub (account e-mail), user_id,
       iat and exp as Unix time, plus any extra claims the caller adds.

       verify() tells failures apart instead of collapsing them to None:
         TokenMalformed    -- segments, header or claims cannot be parsed,
                              or a required claim is missing
         TokenUnsupported  -- parses, but the alg is not HS256 (incl. "none")
         SignatureInvalid  -- MAC does not match
         TokenExpired      -- now >= exp
       Expiry is checked here against the injected clock, not by jose, so
       verification is a pure function of (token, secret, clock) and tests
       can move the clock.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       lets StoreCredentialVerifier run bcrypt even for unknown e-mails so
       response time does not reveal whether an account exists.

Layer rule: no imports from api/ or notify/. Import from core/ is allowed.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt
from jose import jws, jwt
from jose.exceptions import JOSEError

from auth.errors import SignatureInvalid, TokenExpired, TokenMalformed, TokenUnsupported
from core.config import get_settings

_ALGORITHM = "HS256"

# Claims issue() owns. Extra claims may not override them.
_RESERVED_CLAIMS = frozenset({"sub", "user_id", "iat", "exp"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    72 characters (pydantic max_length) to stay under that limit.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("crowdcontrol_timing_dummy")


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies signed session tokens.

    Usage:
        tokens = TokenService(secret_key, lifetime_seconds=3600)
        token = tokens.issue("alice@example.com", 7)
        claims = tokens.verify(token)   # raises a TokenError subclass on failure
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a non-empty secret key.")
        self._secret_key = secret_key
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def issue(self, subject: str, user_id: int, extra_claims: dict[str, Any] | None = None) -> str:
        """Encode a signed token for subject/user_id that expires lifetime_seconds from now."""
        now = self._clock()
        claims: dict[str, Any] = {
            k: v for k, v in (extra_claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        claims.update(
            {
                "sub": subject,
                "user_id": user_id,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=self.lifetime_seconds)).timestamp()),
            }
        )
        return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claim set of a valid token or raise the matching TokenError.

        Only the signature, the claim types and exp are checked. Extra claims
        passed to issue() (aud, nbf, ...) are returned as-is.
        """
        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except (JOSEError, AttributeError, TypeError, ValueError) as exc:
            raise TokenMalformed() from exc

        if header.get("alg") != _ALGORITHM:
            raise TokenUnsupported()

        try:
            jws.verify(token, self._secret_key, algorithms=[_ALGORITHM])
        except JOSEError as exc:
            raise SignatureInvalid() from exc

        exp = claims.get("exp")
        if (
            not isinstance(claims.get("sub"), str)
            or not isinstance(claims.get("user_id"), int)
            or not isinstance(exp, (int, float))
        ):
            raise TokenMalformed()
        if self._clock().timestamp() >= exp:
            raise TokenExpired()
        return claims

    def matches_identity(self, token: str, expected_subject: str) -> bool:
        """Verify the token, then compare its subject. Verification errors propagate."""
        return self.verify(token)["sub"] == expected_subject


@lru_cache
def get_token_service() -> TokenService:
    """Return the process-wide TokenService built from Settings."""
    settings = get_settings()
    return TokenService(settings.secret_key, settings.token_expire_seconds)
