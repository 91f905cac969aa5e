"""
auth/oauth.py -- Authlib OAuth/OIDC registry and post-verification identity extraction.

Only the step *after* the provider has vouched for the user lives here:
turning a provider token into a verified (email, subject, name) identity that
the session issuer can mint tokens for. The provider's own login UI is not
our concern.

The registry is built from an injected Settings object by the app lifespan
(build_oauth_registry) rather than at import time. Only providers with both
client ID and secret configured are registered.

Security notes:
  [H1] Email verification is mandatory. Every extraction path raises
       ValueError unless the provider confirms the email is verified. An
       unverified address could belong to anyone, and accounts are linked by
       email in UserStore.upsert_oauth_user().

  OAuth state (CSRF protection for the code flow) is handled by authlib via
  Starlette SessionMiddleware.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow via OIDC discovery, plus direct ID-token
            exchange for web/mobile clients that ran Google Sign-In themselves.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth, OAuthError
from authlib.jose.errors import JoseError

from auth.errors import InvalidOAuthToken, OAuthDisabled

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("bizpilot.auth.oauth")

SUPPORTED_PROVIDERS = ("google", "github")


@dataclass(frozen=True)
class OAuthIdentity:
    """A provider-verified identity, ready for UserStore.upsert_oauth_user()."""

    provider: str
    subject: str
    email: str
    email_verified: bool
    name: str


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Return an authlib OAuth registry with every configured provider."""
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[str]:
    """Return the names of providers with both client ID and secret configured."""
    enabled: list[str] = []
    if settings.google_client_id and settings.google_client_secret:
        enabled.append("google")
    if settings.github_client_id and settings.github_client_secret:
        enabled.append("github")
    return enabled


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> OAuthIdentity:
    """Extract a verified identity from a code-flow token response.

    Raises:
        ValueError: unknown provider, or a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider == "google":
        return _get_oidc_user_info(token.get("userinfo"), provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> OAuthIdentity:
    """GitHub needs two API calls: /user for the stable numeric ID and the
    display name, /user/emails for the primary verified address [H1].
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    subject_id = str(profile["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    name = profile.get("name") or profile.get("login") or email
    return OAuthIdentity(provider="github", subject=subject_id, email=email, email_verified=True, name=name)


def _get_oidc_user_info(userinfo: dict | None, provider: str) -> OAuthIdentity:
    """Normalize OIDC claims (id_token userinfo). Omitted email_verified counts as unverified [H1]."""
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthIdentity(
        provider=provider,
        subject=str(subject_id),
        email=email,
        email_verified=True,
        name=userinfo.get("name") or email,
    )


async def verify_google_id_token(oauth: OAuth, id_token: str) -> OAuthIdentity:
    """Verify a Google ID token obtained client-side and extract the identity.

    Signature, issuer, audience (our client ID) and expiry are checked by
    authlib against Google's published keys.

    Raises:
        OAuthDisabled: Google is not configured.
        InvalidOAuthToken: the token does not verify or lacks a verified email.
    """
    client = oauth.create_client("google")
    if client is None:
        raise OAuthDisabled()

    try:
        claims = await client.parse_id_token({"id_token": id_token}, nonce=None)
    except (JoseError, OAuthError, ValueError, KeyError) as exc:
        logger.warning("Google ID token rejected: %s", type(exc).__name__)
        raise InvalidOAuthToken() from None

    try:
        return _get_oidc_user_info(dict(claims) if claims else None, "google")
    except ValueError as exc:
        logger.warning("Google ID token rejected: %s", exc)
        raise InvalidOAuthToken() from None
