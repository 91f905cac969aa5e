"""
auth/errors.py -- Error taxonomy for the session/identity core.

Every failure the core can report to a client is an AuthError subclass with a
stable machine-readable error_code and an HTTP status_code. Messages are
deliberately neutral: INVALID_TOKEN does not say whether the signature, the
structure or the expiry was wrong, and INVALID_REFRESH_TOKEN does not say
whether the record was missing, expired or revoked. That keeps the API from
acting as an oracle for credential probing.

StoreUnavailable is separate from the credential errors on purpose: a
database outage must surface as a generic 503, never as "invalid token",
otherwise clients would throw away perfectly valid sessions.

Layer rule: no imports from api/ or core/. The API layer maps these classes to
responses in api/main.py.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for request-scoped auth failures mapped to HTTP responses."""

    status_code: int = 401
    error_code: str = "UNAUTHORIZED"
    default_message: str = "Unauthorized"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthHeaderMissing(AuthError):
    status_code = 401
    error_code = "AUTH_HEADER_MISSING"
    default_message = "Authorization header missing"


class InvalidToken(AuthError):
    """Access token failed signature, structure, audience or expiry checks."""

    status_code = 401
    error_code = "INVALID_TOKEN"
    default_message = "Invalid or expired token"


class UserNotFound(AuthError):
    status_code = 404
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class Unauthorized(AuthError):
    """The request carries no role context at all."""

    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class Forbidden(AuthError):
    """The request's roles do not intersect the route's required roles."""

    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Forbidden"


class InvalidRefreshToken(AuthError):
    """Refresh token not found, expired or revoked -- deliberately undifferentiated."""

    status_code = 401
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class MissingRefreshToken(AuthError):
    status_code = 400
    error_code = "MISSING_REFRESH_TOKEN"
    default_message = "Refresh token is required"


class InvalidCredentials(AuthError):
    """Wrong email or wrong password. Same message for both [C1]."""

    status_code = 401
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class UserExists(AuthError):
    status_code = 409
    error_code = "USER_EXISTS"
    default_message = "User with this email already exists"


class OAuthDisabled(AuthError):
    status_code = 500
    error_code = "OAUTH_DISABLED"
    default_message = "OAuth provider is not configured"


class InvalidOAuthToken(AuthError):
    status_code = 401
    error_code = "INVALID_OAUTH_TOKEN"
    default_message = "Invalid OAuth token"


class StoreUnavailable(Exception):
    """The persistence layer could not be reached or timed out.

    Not an AuthError: it says nothing about the credential. Callers (the
    collaborator layer) may retry; the core never does.
    """

    status_code = 503
    error_code = "STORE_UNAVAILABLE"
    message = "Service temporarily unavailable"
