"""
api/main.py -- FastAPI application entry point for the BizPilot session API.

Exposes the session/identity core (auth/) over HTTP for the BizPilot web
and mobile clients.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- CORS headers for the web origin; credentials allowed
                              so the refresh cookie reaches /auth/refresh
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state storage for authlib

Lifespan builds every auth component once, in dependency order, and hands
each its collaborators explicitly. Nothing below this module reads settings
or opens a database on its own.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.database import Database
from auth.dependencies import AccessVerifier
from auth.errors import AuthError, StoreUnavailable
from auth.oauth import build_oauth_registry
from auth.refresh_store import RefreshTokenStore
from auth.roles import RoleContextResolver
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import AccessTokenCodec
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("bizpilot.api")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def init_auth_components(app: FastAPI, settings: Settings, db: Database) -> None:
    """Construct the auth core on app.state.

    Order follows the dependency graph, leaf to root: stores and codec, then
    the role resolver, then the issuer and verifier that compose them. Tests
    call this with their own Settings and Database.
    """
    app.state.settings = settings
    app.state.db = db
    app.state.user_store = UserStore(db)
    app.state.refresh_store = RefreshTokenStore(db, settings)
    app.state.codec = AccessTokenCodec(settings)
    app.state.role_resolver = RoleContextResolver(app.state.user_store)
    app.state.session_issuer = SessionIssuer(
        app.state.user_store,
        app.state.refresh_store,
        app.state.codec,
        app.state.role_resolver,
    )
    app.state.access_verifier = AccessVerifier(app.state.codec, app.state.user_store, app.state.role_resolver)
    app.state.oauth = build_oauth_registry(settings)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database and build the auth core; dispose the engine on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    logger.info("BizPilot API starting up")
    settings = get_settings()
    db = Database(settings.database_url, timeout=settings.db_timeout_seconds)
    init_auth_components(app, settings, db)
    logger.info(
        "Auth initialized (access_ttl=%ss, refresh_ttl=%sd)",
        settings.jwt_access_expires_in,
        settings.jwt_refresh_expires_in_days,
    )

    yield

    db.close()
    logger.info("BizPilot API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="BizPilot API",
    description="Session and identity service: login, token refresh, logout and role context.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # Browsers only send the refresh cookie cross-origin with credentials on.
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth "state" value in the session between the redirect
# to the provider and the callback (CSRF protection for the code flow).
app.add_middleware(SessionMiddleware, secret_key=_settings.session_secret, same_site="lax")

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a core auth failure with its stable error code.

    401s carry WWW-Authenticate so generic HTTP clients know a bearer token
    is expected.
    """
    response = _error_response(exc.status_code, exc.error_code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Database outage -> 503. Never reported as a credential failure."""
    logger.error("Store unavailable on %s %s: %r", request.method, request.url.path, exc.__cause__)
    return _error_response(exc.status_code, exc.error_code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "RATE_LIMITED", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "VALIDATION_ERROR", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
async def health(request: Request) -> JSONResponse:
    """Return API liveness plus a database probe. 503 when the database is down."""
    db_ok = request.app.state.db.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
