"""
API request and response models for the admin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.tokens import MAX_PASSWORD_BYTES, password_too_long

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    admin = "admin"
    super_admin = "super_admin"


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


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
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=72)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    email: str
    role: RoleEnum


class MeResponse(BaseModel):
    user_id: int
    email: str
    name: str
    role: RoleEnum
    oauth_provider: Optional[str] = None


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users.

    There is no role field: the role is always derived from the email domain.
    password is optional -- omit it for Google-only accounts.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, min_length=8, max_length=MAX_PASSWORD_BYTES)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        """max_length counts characters; bcrypt's limit is in UTF-8 bytes."""
        if value is not None and password_too_long(value):
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
        return value


class UserPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    is_active: Optional[bool] = None


class RoleUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}/role."""

    role: RoleEnum


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/auth/profile (self-service)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    role: RoleEnum
    oauth_provider: Optional[str] = None
    is_active: bool
    created_at: str
    last_login: Optional[str] = None
