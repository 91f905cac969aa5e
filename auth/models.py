"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the codec and the issuer do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class BusinessMembership:
    """A User's membership in a Business (the business_users row).

    business_name is joined in by the store for serialization only; it plays
    no part in role resolution.
    """

    user_id: str
    business_id: str
    role: str
    is_active: bool = True
    business_name: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class User:
    """Represents an identity in BizPilot.

    password_hash is None for OAuth-only users (they have no local password).
    provider is "email" for local registrations, otherwise the OAuth provider
    that last linked the account; provider_id is that provider's stable user id.

    memberships holds the user's *active* business memberships in enumeration
    order once RoleContextResolver.resolve() has run for it.
    """

    email: str
    provider: str = "email"  # "email" | "google" | "github"
    id: str | None = None
    password_hash: str | None = None
    provider_id: str | None = None
    email_verified: bool = False
    full_name: str | None = None
    created_at: str | None = None
    memberships: list[BusinessMembership] = field(default_factory=list)


@dataclass
class RefreshToken:
    """One outstanding step in a session lineage.

    Security design:
    - token_hash is SHA-256 of the raw secret. The raw secret is never
      persisted; it is returned ONCE at issuance and then unrecoverable.
    - A record is valid iff revoked_at is None and expires_at is in the future.
    - revoked_at is set at most once and never cleared.
    """

    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    id: str | None = None
    revoked_at: datetime | None = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    """Result of RefreshTokenStore.issue(). raw_token is the one-time secret."""

    raw_token: str
    record_id: str
    expires_at: datetime


@dataclass(frozen=True)
class RotationResult:
    """Result of RefreshTokenStore.rotate().

    old_record is the presented token's row as it looks after revocation.
    """

    old_record: RefreshToken
    new_raw_token: str
    new_record_id: str
    new_expires_at: datetime


@dataclass(frozen=True)
class AccessTokenClaims:
    """Decoded access-token claim set. Ephemeral, never persisted.

    roles and business_ids are parallel: roles[i] is the caller's role in
    business_ids[i] at the moment the token was signed.
    """

    sub: str
    roles: list[str]
    business_ids: list[str]
    iss: str
    aud: str
    exp: int


@dataclass(frozen=True)
class RoleContext:
    roles: list[str]
    business_ids: list[str]


@dataclass(frozen=True)
class AuthContext:
    """Typed capability object handed to authorized handlers.

    Built per request by AccessVerifier; roles and business_ids are read live
    from memberships, not copied from the access token.
    """

    user: User
    roles: list[str]
    business_ids: list[str]


@dataclass(frozen=True)
class TokenPair:
    """Output of SessionIssuer: one access token plus one refresh token."""

    user: User
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    refresh_token_id: str
