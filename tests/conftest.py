"""
tests/conftest.py -- Shared test fixtures for BizPilot session tests.

This module provides:
  - settings: a Settings instance built in code (no .env, no environment)
  - db / user_store / refresh_store / codec / resolver / issuer / verifier:
    the auth core wired together the same way the app lifespan does it
  - make_user(): creates a user (optionally with memberships) in one call
  - api_client: TestClient over the real app with a patched lifespan
  - BrokenEngine: simulates a database outage for StoreUnavailable tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Each test gets its own name, so tests never see each other's rows.

DEBUG and JWT_ACCESS_SECRET must be set before api.main is imported: the
module builds its middleware stack from get_settings() at import time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any api/core import so get_settings() succeeds.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef0123456789")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from api.limiter import limiter
from api.main import app, init_auth_components
from auth.database import Database
from auth.dependencies import AccessVerifier
from auth.models import User
from auth.refresh_store import RefreshTokenStore
from auth.roles import RoleContextResolver
from auth.sessions import SessionIssuer
from auth.store import UserStore
from auth.tokens import AccessTokenCodec, hash_password
from core.config import Settings

TEST_SECRET = "unit-test-secret-abcdefghijklmnopqrstuvwxyz012345"
TEST_PASSWORD = "Secret123!"

# Representative User-Agent strings for the two transport channels.
BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.5 Safari/605.1.15"
)
MOBILE_UA = "okhttp/4.12.0"


def memory_db_url() -> str:
    return f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class BrokenEngine:
    """Stands in for an engine whose database has gone away.

    Swap it onto a Database with monkeypatch.setattr(db, "engine", BrokenEngine()).
    """

    def _fail(self):
        raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

    def connect(self):
        self._fail()

    def begin(self):
        self._fail()

    def dispose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        jwt_access_secret=TEST_SECRET,
        jwt_access_expires_in=900,
        jwt_refresh_expires_in_days=30,
    )


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database(memory_db_url())
    yield database
    database.close()


@pytest.fixture
def user_store(db: Database) -> UserStore:
    return UserStore(db)


@pytest.fixture
def refresh_store(db: Database, settings: Settings) -> RefreshTokenStore:
    return RefreshTokenStore(db, settings)


@pytest.fixture
def codec(settings: Settings) -> AccessTokenCodec:
    return AccessTokenCodec(settings)


@pytest.fixture
def resolver(user_store: UserStore) -> RoleContextResolver:
    return RoleContextResolver(user_store)


@pytest.fixture
def issuer(
    user_store: UserStore,
    refresh_store: RefreshTokenStore,
    codec: AccessTokenCodec,
    resolver: RoleContextResolver,
) -> SessionIssuer:
    return SessionIssuer(user_store, refresh_store, codec, resolver)


@pytest.fixture
def verifier(codec: AccessTokenCodec, user_store: UserStore, resolver: RoleContextResolver) -> AccessVerifier:
    return AccessVerifier(codec, user_store, resolver)


@pytest.fixture
def make_user(user_store: UserStore) -> Callable[..., str]:
    """Return a factory: make_user(email, memberships=[(business_name, role), ...]) -> user_id.

    Passwords are hashed with bcrypt so login tests can use TEST_PASSWORD.
    """

    def _make(
        email: str = "a@x.com",
        memberships: list[tuple[str, str]] | None = None,
        password: str | None = TEST_PASSWORD,
    ) -> str:
        user_id = user_store.create_user(
            User(
                email=email,
                password_hash=hash_password(password) if password else None,
                full_name="Test User",
            )
        )
        for business_name, role in memberships or []:
            business_id = user_store.create_business(business_name)
            user_store.add_membership(user_id, business_id, role)
        return user_id

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, db: Database):
    """Return an async context manager that replaces the real lifespan.

    Wires the test Settings and Database into app.state through the same
    init_auth_components() the production lifespan uses, so routes see an
    isolated database and a known signing secret.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_components(app, settings, db)
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings, db: Database) -> Generator[TestClient, None, None]:
    """TestClient over the real app: real middleware, real handlers, test stores.

    The default User-Agent identifies as a non-browser client so refresh
    tokens come back in the JSON body; browser tests pass BROWSER_UA.
    HTTPS base URL so the client cookie jar returns the Secure refresh
    cookie. The rate limiter's in-memory counters are reset per test.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(settings, db)
    with TestClient(
        app,
        base_url="https://testserver",
        raise_server_exceptions=True,
        headers={"User-Agent": MOBILE_UA},
    ) as client:
        yield client
