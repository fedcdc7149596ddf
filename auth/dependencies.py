"""
auth/dependencies.py -- FastAPI Depends() helpers for protected routes.

The token filter in api/main.py has already verified the bearer token before
any protected route runs and left it on request.state:

    request.state.token         raw token string
    request.state.token_claims  verified claim dict (sub, user_id, iat, exp)

get_auth_context() turns that into an AuthContext: it loads the account named
by user_id, checks the token is still bound to that account's e-mail, refuses
locked accounts (401, like any other rejected token), and resolves the role's
capabilities. Routes then check an AccessPolicy with require() or ctx.can().

Errors are TrustError subclasses; the handler in api/main.py renders them in
the {"error": {code, message, detail}} envelope with the kind's status.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.authorization import AccessPolicy, AuthContext, capabilities_of
from auth.errors import AccessDenied, SessionLocked, TokenMalformed


def bearer_token(request: Request) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_auth_context(request: Request) -> AuthContext:
    """Build the caller's AuthContext. Raises a TrustError if there is none."""
    token = getattr(request.state, "token", None)
    claims = getattr(request.state, "token_claims", None)
    tokens = request.app.state.tokens
    if token is None or claims is None:
        # Route mounted outside the filter; verify here instead.
        token = bearer_token(request)
        if token is None:
            raise TokenMalformed("Authentication required.")
        claims = tokens.verify(token)

    store = request.app.state.store
    account = store.get_account(claims["user_id"])
    # A deleted account or a changed e-mail voids every token issued before.
    if account is None or not tokens.matches_identity(token, account.email):
        raise TokenMalformed("Token does not match an account.")
    if account.is_locked:
        raise SessionLocked()

    role = store.get_role(account.role_id) if account.role_id is not None else None
    return AuthContext(
        account_id=account.id,
        email=account.email,
        role_name=role.name if role is not None else None,
        capabilities=capabilities_of(account, role),
    )


def require(policy: AccessPolicy, owner_param: str | None = None) -> Callable[..., AuthContext]:
    """Dependency factory: the caller must satisfy policy.

    owner_param names the path parameter holding the owning account id, so
    the self-scope branch of the policy can match. Without it only the
    general branch can.

    Usage:
        @router.get("/users/{user_id}")
        def route(ctx: AuthContext = Depends(require(READ_USER, "user_id"))): ...
    """

    def dependency(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        owner_id = None
        if owner_param is not None:
            raw = request.path_params.get(owner_param)
            try:
                owner_id = int(raw) if raw is not None else None
            except ValueError:
                owner_id = None
        if not ctx.can(policy, owner_id):
            raise AccessDenied()
        return ctx

    return dependency


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Require the ADMIN role. Raises AccessDenied (HTTP 403) otherwise."""
    if not ctx.is_admin:
        raise AccessDenied("Admin access required.")
    return ctx
