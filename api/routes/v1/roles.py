"""
api/routes/v1/roles.py -- Role management endpoints (bearer token required).

Routes:
  GET    /api/v1/roles          -- READ_GENERAL
  GET    /api/v1/roles/{id}     -- READ_GENERAL
  POST   /api/v1/roles          -- CREATE_ROLE_GENERAL
  PUT    /api/v1/roles/{id}     -- UPDATE_GENERAL
  DELETE /api/v1/roles/{id}     -- DELETE_GENERAL; members become unassigned

The ADMIN role is created by /create-super-user only. It cannot be created,
deleted or have its permissions edited here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, RoleCreate, RoleResponse, RoleUpdate
from auth.authorization import CREATE_ROLE, DELETE_ROLE, READ_ROLE, UPDATE_ROLE, AuthContext
from auth.dependencies import require
from auth.models import Role

router = APIRouter()


def _to_response(request: Request, role: Role) -> RoleResponse:
    return RoleResponse.from_role(role, request.app.state.store.count_role_members(role.id))


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, ctx: AuthContext = Depends(require(READ_ROLE))) -> list[RoleResponse]:
    return [_to_response(request, r) for r in request.app.state.roles.list_roles()]


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int, ctx: AuthContext = Depends(require(READ_ROLE))) -> RoleResponse:
    return _to_response(request, request.app.state.roles.get_role(role_id))


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, ctx: AuthContext = Depends(require(CREATE_ROLE))) -> RoleResponse:
    """Create a role. Unknown permission names are rejected by name (400)."""
    roles = request.app.state.roles
    role_id = roles.create_role(Role.from_names(body.name, body.max_members, body.permissions))
    return _to_response(request, roles.get_role(role_id))


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    ctx: AuthContext = Depends(require(UPDATE_ROLE)),
) -> RoleResponse:
    """Change the member cap and/or replace the permission set.

    Lowering max_members below the current member count is allowed; it only
    blocks further assignments until members leave.
    """
    role = request.app.state.roles.update_role(role_id, max_members=body.max_members, permission_names=body.permissions)
    return _to_response(request, role)


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(request: Request, role_id: int, ctx: AuthContext = Depends(require(DELETE_ROLE))) -> MessageResponse:
    request.app.state.roles.delete_role(role_id)
    return MessageResponse(message="Role deleted.")
