"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for BizPilot happen here. No module should
call os.getenv() or os.environ.get() directly. The app entry point calls
get_settings() once and hands the resulting Settings object to every
component constructor (codec, refresh store, issuer, transport helpers).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      app lifespan reads it; components receive Settings explicitly so tests
      can build their own instance without touching the environment.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. cookie_name -> COOKIE_NAME). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the JWT secret policy: dev mode generates a key with
      a warning, production mode refuses to start without one.

Security notes:
  [M6] JWT_ACCESS_SECRET shorter than 32 chars is rejected outright. HS256
       signing relies on key entropy -- a short key weakens every access token.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure. A random per-process key would silently log every
       user out on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import hashlib
import hmac
import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("bizpilot.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'bizpilot_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true or an explicit
    jwt_access_secret). The model_validator enforces production-safety rules.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    # Busy timeout handed to the DB driver. Bounds how long a store call can
    # wait on a lock held by a concurrent request.
    db_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_access_secret: str = Field(
        default="",
        validation_alias=AliasChoices("jwt_access_secret", "jwt_secret"),
    )
    jwt_access_expires_in: int = Field(default=15 * 60, gt=0)  # seconds
    # Signs the OAuth state cookie (Starlette SessionMiddleware). Derived from
    # the access-token secret when unset; never equal to it.
    session_secret: str = ""

    # ------------------------------------------------------------------
    # Refresh tokens and cookie transport
    # ------------------------------------------------------------------

    jwt_refresh_expires_in_days: int = Field(default=30, gt=0)
    cookie_name: str = "bizpilot_refresh"
    cookie_secure: bool = True
    cookie_samesite: Literal["strict", "lax", "none"] = "strict"
    cookie_domain: Optional[str] = None
    cookie_path: str = "/"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    # Frontend origin that receives the post-OAuth redirect.
    web_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # Comma-separated in the environment: ALLOWED_HOSTS=api.example.com,localhost
    allowed_hosts: Annotated[list[str], NoDecode] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.jwt_refresh_expires_in_days * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("allowed_hosts", "cors_origins", mode="before")
    @classmethod
    def split_comma_list(cls, value):
        """Accept "a,b" from the environment as well as a real list."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the access-token secret policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if the secret is missing.

        Both modes: reject secrets shorter than 32 characters [M6].
        """
        if not self.jwt_access_secret:
            if self.debug:
                self.jwt_access_secret = secrets.token_hex(32)
                logger.warning("Using auto-generated JWT_ACCESS_SECRET. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_ACCESS_SECRET is required in production mode. "
                    "Set JWT_ACCESS_SECRET (or JWT_SECRET) in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_access_secret) < 32:
            raise ValueError("JWT_ACCESS_SECRET must be at least 32 characters.")
        if not self.session_secret:
            self.session_secret = hmac.new(
                self.jwt_access_secret.encode(), b"bizpilot-oauth-session", hashlib.sha256
            ).hexdigest()
        elif self.session_secret == self.jwt_access_secret:
            raise ValueError("SESSION_SECRET must differ from JWT_ACCESS_SECRET.")
        if self.cookie_samesite == "none" and not self.cookie_secure:
            raise ValueError("COOKIE_SAMESITE=none requires COOKIE_SECURE=true.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the app lifespan should call this; everything below the API layer
    takes a Settings instance as a constructor argument.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
