"""
API request and response models for BizPilot REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (fullName, accessToken, businessIds ...) because the
web and mobile clients expect them; Python attributes stay snake_case. Every
model below accepts either spelling on input and emits camelCase on output.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from auth.models import User

_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = _WIRE

    email: EmailStr
    # bcrypt only looks at the first 72 bytes; 128 chars is a sane upper bound.
    password: str = Field(min_length=8, max_length=128)
    full_name: str = Field(min_length=2, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = _WIRE

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Optional body for /refresh and /logout. Browsers send the cookie instead."""

    model_config = _WIRE

    refresh_token: Optional[str] = Field(default=None, max_length=256)


class GoogleTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/google/token."""

    model_config = _WIRE

    id_token: str = Field(min_length=1, max_length=8192)


class ForgotPasswordRequest(BaseModel):
    model_config = _WIRE

    email: EmailStr


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BusinessOut(BaseModel):
    """One active membership as the client sees it."""

    model_config = _WIRE

    id: str
    name: str
    role: str
    is_active: bool


class UserOut(BaseModel):
    """Public view of a User. No password hash, no refresh-token data."""

    model_config = _WIRE

    id: str
    email: str
    provider: str
    email_verified: bool
    full_name: Optional[str] = None
    businesses: list[BusinessOut] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            provider=user.provider,
            email_verified=user.email_verified,
            full_name=user.full_name,
            businesses=[
                BusinessOut(id=m.business_id, name=m.business_name, role=m.role, is_active=m.is_active)
                for m in user.memberships
            ],
        )


class SessionResponse(BaseModel):
    """Body returned by every endpoint that issues a token pair.

    refresh_token is only populated for non-browser clients; for browsers it
    travels in the httpOnly cookie and the key is absent from the body.
    """

    model_config = _WIRE

    user: UserOut
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_at: datetime
    refresh_token: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = _WIRE

    user: UserOut
    roles: list[str]
    business_ids: list[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = _WIRE

    message: str
    revoked: int


class OAuthProviderInfo(BaseModel):
    """A configured OAuth provider, as listed by GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    login_url: str


# ---------------------------------------------------------------------------
# Errors and health
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
