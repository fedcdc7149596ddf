"""
auth/errors.py -- Error kinds for the account trust core.

Every expected failure (bad input, missing record, expired token, used code)
is a TrustError subclass carrying a closed ErrorKind and the HTTP status the
API boundary maps it to. Services raise them; api/main.py turns any TrustError
into the {"error": {code, message, detail}} envelope. Nothing here knows
about FastAPI.

Status policy:
  401 -- token failures (the filter short-circuits before routing), and a
         valid token whose account has since been locked
  404 -- missing resources
  403 -- authenticated caller lacks the capability
  400 -- everything else, including POST /auth failures

Hard faults (misconfiguration, DB down) are NOT TrustErrors and surface as 500.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    RESOURCE_NOT_FOUND = "not_found"
    NAME_ALREADY_TAKEN = "name_taken"
    ROLE_LIMIT_EXCEEDED = "role_limit_exceeded"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    AUTHENTICATION_FAILED = "bad_credentials"
    ACCOUNT_RECORD_MISSING = "account_record_missing"
    CODE_NOT_FOUND = "code_not_found"
    CODE_ALREADY_CONSUMED = "code_already_consumed"
    ACCESS_DENIED = "forbidden"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_MALFORMED = "token_malformed"
    SIGNATURE_INVALID = "signature_invalid"
    TOKEN_UNSUPPORTED = "token_unsupported"


class TrustError(Exception):
    """Base class. Subclasses pin kind, status_code and a default message."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    status_code: int = 400
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TrustError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Validation failed."


class ResourceNotFound(TrustError):
    kind = ErrorKind.RESOURCE_NOT_FOUND
    status_code = 404
    default_message = "Resource not found."


class NameAlreadyTaken(TrustError):
    kind = ErrorKind.NAME_ALREADY_TAKEN
    default_message = "Name already taken."


class RoleLimitExceeded(TrustError):
    kind = ErrorKind.ROLE_LIMIT_EXCEEDED

    def __init__(self, role_name: str) -> None:
        self.role_name = role_name
        super().__init__(f"The maximum number of users for role '{role_name}' has been reached.")


class AccountLocked(TrustError):
    kind = ErrorKind.ACCOUNT_LOCKED
    default_message = "Account is locked. Contact a system administrator."


class AccountDisabled(TrustError):
    kind = ErrorKind.ACCOUNT_DISABLED
    default_message = "Account is not enabled. Check your e-mail for the activation link."


class AuthenticationFailed(TrustError):
    kind = ErrorKind.AUTHENTICATION_FAILED
    # Same text for unknown identifier and wrong secret.
    default_message = "Invalid credentials."


class AccountRecordMissing(TrustError):
    kind = ErrorKind.ACCOUNT_RECORD_MISSING
    default_message = "Account record not found for verified credentials."


class CodeNotFound(TrustError):
    kind = ErrorKind.CODE_NOT_FOUND
    default_message = "Verification code not found."


class CodeAlreadyConsumed(TrustError):
    kind = ErrorKind.CODE_ALREADY_CONSUMED
    default_message = "Code was already used."


class AccessDenied(TrustError):
    kind = ErrorKind.ACCESS_DENIED
    status_code = 403
    default_message = "You do not have permission to perform this operation."


class TokenError(TrustError):
    """Any session token failure. Always 401."""

    status_code = 401


class TokenExpired(TokenError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token expired."


class TokenMalformed(TokenError):
    kind = ErrorKind.TOKEN_MALFORMED
    default_message = "Token malformed."


class SignatureInvalid(TokenError):
    kind = ErrorKind.SIGNATURE_INVALID
    default_message = "Invalid signature."


class TokenUnsupported(TokenError):
    kind = ErrorKind.TOKEN_UNSUPPORTED
    default_message = "Token not supported."


class SessionLocked(TokenError):
    """A valid token whose account was locked after it was issued."""

    kind = ErrorKind.ACCOUNT_LOCKED
    default_message = AccountLocked.default_message
