"""
api/routes/v1/auth.py -- Public account endpoints (no bearer token).

Routes:
  POST     /auth                   -- sign in; returns a session token
  GET|PUT  /enable-acc?code=...    -- consume an ACTIVATE code
  GET      /acc-recovery/{email}   -- issue a RECOVER code and send the link
  POST     /reset-pass?code=...    -- consume a RECOVER code and set a new password
  POST     /create-super-user      -- one-time ADMIN bootstrap

These are mounted without the /api/v1 prefix, so the token filter in
api/main.py never sees them.

Security:
  POST /auth, /acc-recovery and /create-super-user share the login rate
  limit (Settings.login_rate_limit) per client IP.
  Every POST /auth failure is 400 with the kind's code; wrong e-mail and wrong
  password are indistinguishable (same code, same message, same bcrypt cost).
  /acc-recovery answers 200 with the same message whether or not the e-mail
  exists, so it cannot be used to enumerate accounts.
  Cache-Control: no-store on token responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LoginResponse, MessageResponse, PasswordReset, SuperUserCreate
from auth.accounts import new_account
from auth.models import CodePurpose
from core.config import get_settings
from notify.dispatcher import activation_notice, recovery_notice

router = APIRouter()

_RECOVERY_MESSAGE = "If an account exists for that address, a recovery link has been sent."


# ---------------------------------------------------------------------------
# Sign in
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth", response_model=LoginResponse)
def sign_in(request: Request, body: LoginRequest) -> JSONResponse:
    """Exchange e-mail and password for a bearer token.

    Failures raise a TrustError (AuthenticationFailed, AccountLocked,
    AccountDisabled, AccountRecordMissing), rendered as 400 by api/main.py.
    """
    authenticator = request.app.state.authenticator
    token = authenticator.authenticate(body.identifier, body.secret)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=request.app.state.tokens.lifetime_seconds,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Activation and recovery
# ---------------------------------------------------------------------------


@router.api_route("/enable-acc", methods=["GET", "PUT"], response_model=MessageResponse)
def enable_account(request: Request, code: str = Query(min_length=1, max_length=64)) -> MessageResponse:
    """Consume an ACTIVATE code. The owning account can sign in afterwards."""
    request.app.state.codes.consume_code(code, CodePurpose.ACTIVATE)
    return MessageResponse(message="Account enabled.")


@limiter.limit(login_rate_limit)
@router.get("/acc-recovery/{email}", response_model=MessageResponse)
def account_recovery(request: Request, email: str) -> MessageResponse:
    """Send a password recovery link if the account exists. Always 200."""
    account = request.app.state.store.get_account_by_email(email)
    if account is not None:
        code = request.app.state.codes.issue_code(account.id, CodePurpose.RECOVER)
        request.app.state.dispatcher.submit(
            recovery_notice(account.email, code, get_settings().website_address)
        )
    return MessageResponse(message=_RECOVERY_MESSAGE)


@router.post("/reset-pass", response_model=MessageResponse)
def reset_password(
    request: Request,
    body: PasswordReset,
    code: str = Query(min_length=1, max_length=64),
) -> MessageResponse:
    """Set a new password with a RECOVER code from /acc-recovery.

    The password pair is checked before the code is consumed, so a typo in
    the confirmation does not burn the link.
    """
    request.app.state.codes.redeem_recovery(code, body.new_secret, body.confirm_secret)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)
@router.post("/create-super-user", response_model=MessageResponse)
def create_super_user(request: Request, body: SuperUserCreate) -> MessageResponse:
    """Create the ADMIN role and its single member. Works once per database.

    The account starts disabled like any other; the activation link goes out
    through the notification dispatcher.
    """
    account = new_account(body.email, body.password, body.first_name, body.last_name)
    account_id = request.app.state.roles.bootstrap_admin(account)
    code = request.app.state.codes.issue_code(account_id, CodePurpose.ACTIVATE)
    request.app.state.dispatcher.submit(activation_notice(account.email, code, get_settings().website_address))
    return MessageResponse(message="Super user created. Check your e-mail for the activation link.")
