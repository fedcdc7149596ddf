"""
api/routes/v1/users.py -- Account management endpoints (bearer token required).

Routes:
  GET    /api/v1/me                         -- the caller and its permissions
  GET    /api/v1/users                      -- list accounts
  GET    /api/v1/users/{id}                 -- one account
  POST   /api/v1/users                      -- create account, send activation link
  PUT    /api/v1/users/{id}                 -- update account
  DELETE /api/v1/users/{id}                 -- delete account and its codes
  POST   /api/v1/users/{id}/lock-acc        -- lock (admin only)
  POST   /api/v1/users/{id}/unlock-acc      -- unlock (admin only)

Auth policy (see auth/authorization.py for the AccessPolicy constants):
  GET    /me                    any authenticated caller
  GET    /users                 READ_GENERAL
  GET    /users/{id}            READ_GENERAL, or READ_SELF on the caller's own id
  POST   /users                 CREATE_USER_GENERAL
  PUT    /users/{id}            UPDATE_GENERAL, or UPDATE_SELF on the caller's own id;
                                role / is_enabled always need UPDATE_GENERAL;
                                is_locked needs the ADMIN role
  DELETE /users/{id}            DELETE_GENERAL
  lock-acc, unlock-acc          ADMIN role

The ADMIN account can only be changed by itself. Anyone else gets 403 on
PUT and DELETE, whatever their permissions, so nobody can lock it or point
its recovery e-mail elsewhere. It keeps the ADMIN role and cannot be deleted.

Admins cannot lock their own account: there is no self-service unlock, so
that would leave nobody able to undo it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MeResponse, MessageResponse, UserCreate, UserResponse, UserUpdate
from auth.authorization import (
    CREATE_USER,
    DELETE_USER,
    LIST_USERS,
    MANAGE_USER,
    READ_USER,
    UPDATE_USER,
    AuthContext,
)
from auth.dependencies import get_auth_context, require, require_admin
from auth.errors import AccessDenied, TrustError, ValidationError
from auth.models import Account, CodePurpose
from auth.permissions import ADMIN_ROLE_NAME
from core.config import get_settings
from notify.dispatcher import activation_notice

router = APIRouter()


def _role_names(request: Request) -> dict[int, str]:
    return {r.id: r.name for r in request.app.state.roles.list_roles()}


def _is_admin_account(request: Request, user_id: int, ctx: AuthContext) -> bool:
    """True if user_id holds the ADMIN role. Raises AccessDenied unless the caller is that account."""
    account = request.app.state.accounts.get_account(user_id)
    if account.role_id is None:
        return False
    role = request.app.state.store.get_role(account.role_id)
    if role is None or role.name != ADMIN_ROLE_NAME:
        return False
    if ctx.account_id != user_id:
        raise AccessDenied("Only the ADMIN account itself may change it.")
    return True


def _to_response(request: Request, account: Account) -> UserResponse:
    role_name = None
    if account.role_id is not None:
        role = request.app.state.store.get_role(account.role_id)
        role_name = role.name if role is not None else None
    return UserResponse.from_account(account, role_name)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/me", response_model=MeResponse)
def me(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return the authenticated account and the permissions its role grants."""
    account = request.app.state.accounts.get_account(ctx.account_id)
    return MeResponse(
        user=_to_response(request, account),
        permissions=sorted(p.value for p in ctx.capabilities),
    )


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, ctx: AuthContext = Depends(require(LIST_USERS))) -> list[UserResponse]:
    names = _role_names(request)
    return [
        UserResponse.from_account(a, names.get(a.role_id) if a.role_id is not None else None)
        for a in request.app.state.accounts.list_accounts()
    ]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require(READ_USER, "user_id")),
) -> UserResponse:
    return _to_response(request, request.app.state.accounts.get_account(user_id))


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: AuthContext = Depends(require(CREATE_USER)),
) -> UserResponse:
    """Create a disabled account and send it an activation link.

    If a role is named and turns out to be full, the account is removed
    again so the request leaves nothing behind.
    """
    accounts = request.app.state.accounts
    roles = request.app.state.roles
    role = roles.get_role_by_name(body.role) if body.role is not None else None

    account_id = accounts.create_account(body.email, body.password, body.first_name, body.last_name)
    if role is not None:
        try:
            roles.assign_role(account_id, role.id)
        except TrustError:
            accounts.delete_account(account_id)
            raise

    code = request.app.state.codes.issue_code(account_id, CodePurpose.ACTIVATE)
    account = accounts.get_account(account_id)
    request.app.state.dispatcher.submit(activation_notice(account.email, code, get_settings().website_address))
    return _to_response(request, account)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    ctx: AuthContext = Depends(require(UPDATE_USER, "user_id")),
) -> UserResponse:
    if body.is_locked is not None and not ctx.is_admin:
        raise AccessDenied("Admin access required.")
    if body.touches_admin_fields() and not ctx.can(MANAGE_USER):
        raise AccessDenied()
    if body.is_locked and user_id == ctx.account_id:
        raise ValidationError("You cannot lock your own account.")
    if _is_admin_account(request, user_id, ctx):
        if body.role is not None and body.role.strip().upper() != ADMIN_ROLE_NAME:
            raise ValidationError("The ADMIN account must keep the ADMIN role.")
    account = request.app.state.accounts.update_account(
        user_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        old_password=body.old_password,
        new_password=body.new_password,
        confirm_password=body.confirm_password,
        role_name=body.role,
        is_enabled=body.is_enabled,
        is_locked=body.is_locked,
    )
    return _to_response(request, account)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require(DELETE_USER)),
) -> MessageResponse:
    if _is_admin_account(request, user_id, ctx):
        raise ValidationError("The ADMIN account cannot be deleted.")
    request.app.state.accounts.delete_account(user_id)
    return MessageResponse(message="User deleted.")


# ---------------------------------------------------------------------------
# Lock state (admin only)
# ---------------------------------------------------------------------------


@router.post("/users/{user_id}/lock-acc", response_model=MessageResponse)
def lock_account(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> MessageResponse:
    if user_id == ctx.account_id:
        raise ValidationError("You cannot lock your own account.")
    request.app.state.locks.lock(user_id)
    return MessageResponse(message="Account locked.")


@router.post("/users/{user_id}/unlock-acc", response_model=MessageResponse)
def unlock_account(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> MessageResponse:
    request.app.state.locks.unlock(user_id)
    return MessageResponse(message="Account unlocked.")
