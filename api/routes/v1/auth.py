"""
api/routes/v1/auth.py -- Session REST endpoints.

Routes:
  POST /api/v1/auth/register                  -- email/password sign-up; issues a session (201)
  POST /api/v1/auth/login                     -- password login; issues a session
  POST /api/v1/auth/refresh                   -- rotate the refresh token; issues a session
  POST /api/v1/auth/logout                    -- revoke the presented refresh token; clear cookie
  POST /api/v1/auth/logout-all                -- revoke every session of the caller (requires auth)
  POST /api/v1/auth/google/token              -- exchange a Google ID token for a session
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}          -- start the OAuth code flow
  GET  /api/v1/auth/oauth/{provider}/callback -- finish the code flow; cookie + redirect to the web app
  GET  /api/v1/auth/me                        -- current user and live role context (requires auth)
  POST /api/v1/auth/forgot-password           -- enumeration-resistant reset request

Token transport:
  Every issuing route goes through _session_body(), which hands the refresh
  secret to exactly one channel: an httpOnly cookie for browsers, the JSON
  body for everything else (see auth/transport.py). The access token is
  always in the body.

Security:
  [H2] Credential-accepting routes are rate-limited to 10 requests/minute per IP.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
  forgot-password returns the same message whether or not the email exists.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    ForgotPasswordRequest,
    GoogleTokenRequest,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    UserOut,
)
from auth.dependencies import get_auth_context
from auth.errors import InvalidCredentials, MissingRefreshToken, OAuthDisabled, UserExists
from auth.models import AuthContext, TokenPair, User
from auth.oauth import SUPPORTED_PROVIDERS, get_enabled_providers, get_oauth_user_info, verify_google_id_token
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password
from auth.transport import apply_token_transport, clear_refresh_cookie, set_refresh_cookie
from core.config import Settings

logger = logging.getLogger("bizpilot.api.auth")

# Auth policy:
# - POST /auth/register, /login, /refresh, /google/token, /forgot-password: public
# - POST /auth/logout: public -- the refresh token itself is the credential being dropped
# - GET  /auth/providers, /auth/oauth/*: public
# - GET  /auth/me, POST /auth/logout-all: require a valid access token (get_auth_context)
router = APIRouter()

_FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_body(request: Request, response: Response, pair: TokenPair) -> dict:
    """Render a TokenPair, routing the refresh secret by client type.

    Cookies and headers set on the injected Response are merged into the
    final response by FastAPI. Issuing routes declare
    response_model_exclude_none=True so a browser body has no refreshToken
    key at all.
    """
    settings: Settings = request.app.state.settings
    body = SessionResponse(
        user=UserOut.from_user(pair.user),
        access_token=pair.access_token,
        expires_in=settings.jwt_access_expires_in,
        refresh_expires_at=pair.refresh_expires_at,
    ).model_dump(mode="json", by_alias=True, exclude_none=True)

    body = apply_token_transport(
        response,
        body,
        settings,
        raw_refresh_token=pair.refresh_token,
        expires_at=pair.refresh_expires_at,
        user_agent=request.headers.get("user-agent"),
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return body


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> str | None:
    """Cookie first (browsers), then the JSON body (mobile / CLI)."""
    settings: Settings = request.app.state.settings
    token = request.cookies.get(settings.cookie_name)
    if not token and body is not None:
        token = body.refresh_token
    return token or None


def _oauth_client(request: Request, provider: str):
    client = request.app.state.oauth.create_client(provider) if provider in SUPPORTED_PROVIDERS else None
    if client is None:
        raise OAuthDisabled()
    return client


def _oauth_failure_redirect(settings: Settings) -> RedirectResponse:
    return RedirectResponse(f"{settings.web_url}/login?error=oauth_failed", status_code=302)


# ---------------------------------------------------------------------------
# Credential endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SessionResponse, response_model_exclude_none=True, status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2] must sit BELOW @router so FastAPI registers the limited wrapper
def register(request: Request, response: Response, body: RegisterRequest) -> dict:
    """Create an email/password account and sign it in.

    The pre-check gives the common case a clean 409; the UNIQUE constraint in
    UserStore.create_user() catches the concurrent case with the same error.
    """
    user_store: UserStore = request.app.state.user_store
    issuer: SessionIssuer = request.app.state.session_issuer

    if user_store.get_by_email(body.email) is not None:
        raise UserExists()

    user_id = user_store.create_user(
        User(
            email=body.email,
            password_hash=hash_password(body.password),
            provider="email",
            full_name=body.full_name,
        )
    )
    pair = issuer.issue_token_pair(user_id)
    return _session_body(request, response, pair)


@router.post("/auth/login", response_model=SessionResponse, response_model_exclude_none=True)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> dict:
    """Authenticate with email and password and issue a session.

    Uses authenticate_user() which includes timing equalization [C1]. Wrong
    email and wrong password produce the same INVALID_CREDENTIALS error.
    """
    user_store: UserStore = request.app.state.user_store
    issuer: SessionIssuer = request.app.state.session_issuer

    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        raise InvalidCredentials()

    pair = issuer.issue_token_pair(user.id, user=user)
    logger.info("Login user=%s", user.id)
    return _session_body(request, response, pair)


@router.post("/auth/refresh", response_model=SessionResponse, response_model_exclude_none=True)
def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None) -> dict:
    """Rotate the presented refresh token and issue a fresh pair.

    The presented token is single-use: a second call with the same value
    fails with INVALID_REFRESH_TOKEN.
    """
    issuer: SessionIssuer = request.app.state.session_issuer

    raw_token = _presented_refresh_token(request, body)
    if raw_token is None:
        raise MissingRefreshToken()

    pair = issuer.refresh(raw_token)
    return _session_body(request, response, pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, response: Response, body: Optional[RefreshRequest] = None) -> MessageResponse:
    """Revoke the presented refresh token (if any) and clear the cookie.

    Idempotent: logging out twice, or with an unknown token, still returns 200.
    """
    settings: Settings = request.app.state.settings
    issuer: SessionIssuer = request.app.state.session_issuer

    raw_token = _presented_refresh_token(request, body)
    if raw_token is not None:
        issuer.revoke(raw_token)

    clear_refresh_cookie(response, settings)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    response: Response,
    context: AuthContext = Depends(get_auth_context),
) -> LogoutAllResponse:
    """Revoke every refresh token belonging to the caller ("log out everywhere")."""
    settings: Settings = request.app.state.settings
    issuer: SessionIssuer = request.app.state.session_issuer

    revoked = issuer.revoke_all(context.user.id)
    clear_refresh_cookie(response, settings)
    return LogoutAllResponse(message="Logged out of all sessions.", revoked=revoked)


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Accept a reset request without revealing whether the email is registered.

    Delivering the reset link is out of scope for this service; the request is
    only logged (by user id, never by email) for the mailer to pick up.
    """
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(body.email)
    if user is not None and user.password_hash is not None:
        logger.info("Password reset requested for user=%s", user.id)
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.post("/auth/google/token", response_model=SessionResponse, response_model_exclude_none=True)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
async def google_token(request: Request, response: Response, body: GoogleTokenRequest) -> dict:
    """Exchange a client-side Google ID token for a BizPilot session."""
    user_store: UserStore = request.app.state.user_store
    issuer: SessionIssuer = request.app.state.session_issuer

    identity = await verify_google_id_token(request.app.state.oauth, body.id_token)
    user_id = user_store.upsert_oauth_user(
        provider=identity.provider,
        provider_id=identity.subject,
        email=identity.email,
        email_verified=identity.email_verified,
        full_name=identity.name,
    )
    pair = issuer.issue_token_pair(user_id)
    return _session_body(request, response, pair)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers so the login page can render buttons.

    Public endpoint. Returns an empty list if no OAuth env vars are set.
    """
    settings: Settings = request.app.state.settings
    return [
        OAuthProviderInfo(name=name, login_url=f"/api/v1/auth/oauth/{name}")
        for name in get_enabled_providers(settings)
    ]


@router.get("/auth/oauth/{provider}")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's consent screen."""
    client = _oauth_client(request, provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the code flow: upsert the user, set the refresh cookie, redirect.

    Only the access token goes into the redirect URL. The refresh secret is
    delivered as the httpOnly cookie so it never lands in browser history or
    referrer headers. Any provider failure sends the user back to the login
    page with a generic error.
    """
    settings: Settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store
    issuer: SessionIssuer = request.app.state.session_issuer
    client = _oauth_client(request, provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("%s OAuth token exchange failed: %s", provider, exc.error)
        return _oauth_failure_redirect(settings)

    try:
        identity = await get_oauth_user_info(client, provider, token)
    except (ValueError, httpx.HTTPError) as exc:
        logger.warning("%s OAuth identity rejected: %s", provider, exc)
        return _oauth_failure_redirect(settings)

    user_id = user_store.upsert_oauth_user(
        provider=identity.provider,
        provider_id=identity.subject,
        email=identity.email,
        email_verified=identity.email_verified,
        full_name=identity.name,
    )
    pair = issuer.issue_token_pair(user_id)

    resp = RedirectResponse(
        f"{settings.web_url}/auth/callback?{urlencode({'token': pair.access_token})}",
        status_code=302,
    )
    set_refresh_cookie(resp, settings, pair.refresh_token, pair.refresh_expires_at)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("OAuth login via %s user=%s", provider, user_id)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(context: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return the caller's profile and live role context."""
    return MeResponse(
        user=UserOut.from_user(context.user),
        roles=context.roles,
        business_ids=context.business_ids,
    )
