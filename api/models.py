"""
API request and response models for the CrowdControl REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Permission names travel as plain strings. They are validated by the domain
(auth/permissions.parse_permission) so an unknown token is reported by name
with the same {code, message} envelope as every other validation error.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.accounts import EMAIL_PATTERN, MIN_PASSWORD_LENGTH
from auth.models import Account, Role

# bcrypt ignores input past 72 bytes; cap here so two passwords that differ
# only after that point are never accepted as equal.
_MAX_PASSWORD_LENGTH = 72


# ---------------------------------------------------------------------------
# Request models -- public account flows
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth."""

    identifier: str = Field(min_length=1, max_length=100)
    secret: str = Field(min_length=1, max_length=_MAX_PASSWORD_LENGTH)


class PasswordReset(BaseModel):
    """Request body for POST /reset-pass?code=..."""

    new_secret: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=_MAX_PASSWORD_LENGTH)
    confirm_secret: str = Field(min_length=1, max_length=_MAX_PASSWORD_LENGTH)


class SuperUserCreate(BaseModel):
    """Request body for POST /create-super-user."""

    email: str = Field(pattern=EMAIL_PATTERN, max_length=100)
    first_name: str = Field(default="", max_length=50)
    last_name: str = Field(default="", max_length=50)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=_MAX_PASSWORD_LENGTH)


# ---------------------------------------------------------------------------
# Request models -- users and roles
# ---------------------------------------------------------------------------


class UserCreate(SuperUserCreate):
    """Request body for POST /api/v1/users. role is a role name, optional."""

    role: Optional[str] = Field(default=None, min_length=1, max_length=100)


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}. Omitted fields are left alone.

    email, first_name, last_name and the password fields are "own record"
    changes. role, is_enabled and is_locked are administrative and need
    UPDATE_GENERAL even on the caller's own record.
    """

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    old_password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD_LENGTH)
    new_password: Optional[str] = Field(
        default=None, min_length=MIN_PASSWORD_LENGTH, max_length=_MAX_PASSWORD_LENGTH
    )
    confirm_password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD_LENGTH)
    role: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_enabled: Optional[bool] = None
    is_locked: Optional[bool] = None

    def touches_admin_fields(self) -> bool:
        return self.role is not None or self.is_enabled is not None or self.is_locked is not None


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    max_members: int = Field(ge=0)
    permissions: list[str] = Field(default_factory=list, max_length=50)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/roles/{id}. Omitted fields are left alone."""

    max_members: Optional[int] = Field(default=None, ge=0)
    permissions: Optional[list[str]] = Field(default=None, max_length=50)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response body for a successful POST /auth."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class UserResponse(BaseModel):
    """Public view of an account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: Optional[str]
    is_enabled: bool
    is_locked: bool
    created_at: Optional[str]

    @classmethod
    def from_account(cls, account: Account, role_name: Optional[str]) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=role_name,
            is_enabled=account.is_enabled,
            is_locked=account.is_locked,
            created_at=account.created_at,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/me: the caller plus its effective permissions."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    permissions: list[str]


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    max_members: int
    members: int
    permissions: list[str]

    @classmethod
    def from_role(cls, role: Role, members: int) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            max_members=role.max_members,
            members=members,
            permissions=sorted(p.value for p in role.permissions),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
