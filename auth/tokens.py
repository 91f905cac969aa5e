"""
auth/tokens.py -- Access-token codec, refresh-secret helpers, password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Claim shape is fixed:
       {sub, roles, businessIds, iss, aud, exp}. Verification needs no storage
       lookup -- signature, expiry, issuer and audience only. That is what makes
       per-request checks cheap, and also why a leaked access token stays valid
       until its short TTL runs out; only refresh tokens are revocable.
       decode() raises InvalidToken on every failure with one message, so a
       client cannot learn *why* a token was rejected.

  Refresh secrets: secrets.token_hex(64) gives 512 bits of entropy, hex
       encoded for cookies and JSON. Only SHA-256(raw) is stored. A plain
       digest (not bcrypt, not HMAC) is enough because the input is already
       high-entropy, and it keeps the lookup an exact-match index hit.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered [C1].

The codec takes its secret and TTL from an injected Settings object; nothing
here reads configuration at import time.

Layer rule: no imports from api/. core.config is imported for typing only.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken
from auth.models import AccessTokenClaims

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("bizpilot.auth.tokens")

ALGORITHM = "HS256"
TOKEN_ISSUER = "bizpilot-api"
TOKEN_AUDIENCE = "bizpilot-app"

# Raw refresh secret size in bytes (hex doubles the length on the wire).
REFRESH_TOKEN_BYTES = 64


# ---------------------------------------------------------------------------
# Access-token codec
# ---------------------------------------------------------------------------


class AccessTokenCodec:
    """Stateless signer/verifier for short-lived access tokens.

    Usage:
        codec = AccessTokenCodec(settings)
        token = codec.sign(user_id, ["owner"], [business_id])
        claims = codec.decode(token)   # raises InvalidToken
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_access_secret
        self._ttl = timedelta(seconds=settings.jwt_access_expires_in)

    def sign(self, user_id: str, roles: list[str], business_ids: list[str]) -> str:
        """Encode a signed JWT carrying the caller's identity and role snapshot.

        roles and business_ids are copied as given: same order, duplicates kept.
        """
        expire = datetime.now(timezone.utc) + self._ttl
        payload = {
            "sub": user_id,
            "roles": list(roles),
            "businessIds": list(business_ids),
            "iss": TOKEN_ISSUER,
            "aud": TOKEN_AUDIENCE,
            "exp": expire,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> AccessTokenClaims:
        """Verify and decode an access token.

        Raises InvalidToken on signature mismatch, malformed structure, wrong
        issuer/audience, expiry, or a claim set that does not have the
        expected shape. The reason is logged at DEBUG, never returned.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=TOKEN_AUDIENCE,
                issuer=TOKEN_ISSUER,
                options={"require_exp": True, "require_sub": True},
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            raise InvalidToken() from None

        sub = payload.get("sub")
        roles = payload.get("roles")
        business_ids = payload.get("businessIds")
        if (
            not isinstance(sub, str)
            or not sub
            or not _is_str_list(roles)
            or not _is_str_list(business_ids)
            or not isinstance(payload.get("exp"), int)
        ):
            logger.debug("Access token rejected: unexpected claim shape")
            raise InvalidToken()

        return AccessTokenClaims(
            sub=sub,
            roles=roles,
            business_ids=business_ids,
            iss=payload["iss"],
            aud=payload["aud"],
            exp=payload["exp"],
        )


def _is_str_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


# ---------------------------------------------------------------------------
# Refresh secrets
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new raw refresh secret (128 hex chars, 512 bits of entropy)."""
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def hash_refresh_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest stored in place of the raw secret."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length (Pydantic max_length) well below that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1], computed once at module load.
_DUMMY_HASH: str = hash_password("bizpilot_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists or has a password:
    - Unknown email or OAuth-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure. The caller turns None
    into INVALID_CREDENTIALS without saying which half was wrong.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user
