"""
auth/dependencies.py -- Per-request access verification and role gating.

AccessVerifier is the framework-free state machine; the FastAPI functions
below are thin Depends() adapters over it.

Per request, terminal states AUTHORIZED / REJECTED:
  1. Authorization: Bearer <token> required      -> else AUTH_HEADER_MISSING
  2. Token decoded by the codec                    -> else INVALID_TOKEN
  3. User loaded by the token's subject            -> else USER_NOT_FOUND
  4. Role context recomputed from live memberships -> AuthContext

Identity comes from the signed token; authorization data does not. Roles and
business ids are re-read on every request, so a removed membership takes
effect on the next request instead of at the next token expiry. The cost is
one extra membership query per request.

The verified context is *returned* to the handler as a typed AuthContext via
Depends(). Nothing is stashed on the request object.

require_roles() runs after verification:
  empty role set on the request     -> UNAUTHORIZED
  no overlap with the required set  -> FORBIDDEN

Layer rule: may import from fastapi (this module is part of the dependency
injection system). No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import AuthHeaderMissing, Forbidden, Unauthorized, UserNotFound
from auth.models import AuthContext
from auth.roles import RoleContextResolver
from auth.store import UserStore
from auth.tokens import AccessTokenCodec

_BEARER_PREFIX = "Bearer "


class AccessVerifier:
    def __init__(self, codec: AccessTokenCodec, user_store: UserStore, resolver: RoleContextResolver) -> None:
        self.codec = codec
        self.user_store = user_store
        self.resolver = resolver

    def verify(self, authorization: str | None) -> AuthContext:
        """Run the verification state machine on a raw Authorization header value.

        Returns the AuthContext on success; raises AuthHeaderMissing,
        InvalidToken or UserNotFound otherwise.
        """
        token = extract_bearer_token(authorization)
        claims = self.codec.decode(token)
        user = self.user_store.get_by_id(claims.sub)
        if user is None:
            raise UserNotFound()
        context = self.resolver.resolve(user)
        return AuthContext(user=user, roles=context.roles, business_ids=context.business_ids)


def extract_bearer_token(authorization: str | None) -> str:
    """Return the token from "Bearer <token>" or raise AuthHeaderMissing."""
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        raise AuthHeaderMissing()
    token = authorization[len(_BEARER_PREFIX) :].strip()
    if not token:
        raise AuthHeaderMissing()
    return token


def check_roles(context: AuthContext, required: set[str]) -> AuthContext:
    """Gate a verified context against a required role set."""
    if not context.roles:
        raise Unauthorized()
    if required.isdisjoint(context.roles):
        raise Forbidden()
    return context


# ---------------------------------------------------------------------------
# FastAPI adapters
# ---------------------------------------------------------------------------


def get_auth_context(request: Request) -> AuthContext:
    """Require a valid access token. Raises an AuthError subclass otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    verifier: AccessVerifier = request.app.state.access_verifier
    return verifier.verify(request.headers.get("Authorization"))


def require_roles(*required: str) -> Callable[..., AuthContext]:
    """Dependency factory: authenticated AND holding at least one of `required`.

    Use as a FastAPI dependency:
        @router.post("/businesses/{id}/invoices")
        def route(ctx: AuthContext = Depends(require_roles("owner", "manager"))): ...
    """
    required_set = set(required)

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        return check_roles(context, required_set)

    return dependency
