"""
auth/transport.py -- How a refresh token travels back to the client.

Security boundary:
  Browser clients get the refresh secret ONLY as a cookie that script cannot
  read (httpOnly), that is only sent over HTTPS (secure), and that is not sent
  on cross-site requests (samesite=strict by default). The JSON body for a
  browser never contains refreshToken -- an XSS payload reading the response
  must not be able to lift a long-lived credential.

  Non-browser clients (mobile apps, CLIs, server-to-server) have no cookie
  jar worth trusting, so they get refreshToken in the JSON body and no cookie.

Browser detection is a User-Agent heuristic: real browsers all send a
"Mozilla/x.y" product token; common HTTP libraries and mobile stacks either
don't, or announce themselves with a known token that overrides it.

Layer rule: no imports from api/. Works on any Starlette Response.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from starlette.responses import Response

    from core.config import Settings

_BROWSER_RE = re.compile(r"\bMozilla/\d")

# Tokens that mark a client as non-browser even when it also claims Mozilla/.
_NON_BROWSER_RE = re.compile(
    r"curl/|wget/|okhttp/|python-requests/|python-httpx/|httpx/|aiohttp/|axios/|node-fetch|undici"
    r"|PostmanRuntime/|insomnia/|Dart/|Expo/|CFNetwork/|ReactNative|Dalvik/|Go-http-client/|Java/",
    re.IGNORECASE,
)


def is_browser_client(user_agent: str | None) -> bool:
    """Return True if the User-Agent looks like an interactive web browser."""
    if not user_agent:
        return False
    if _NON_BROWSER_RE.search(user_agent):
        return False
    return bool(_BROWSER_RE.search(user_agent))


def build_refresh_cookie_options(settings: Settings, expires_at: datetime) -> dict:
    """Return Response.set_cookie() keyword arguments for the refresh cookie.

    httponly is always on. secure, samesite, domain and path come from
    settings (defaults: secure, strict, host-only, "/"). The cookie expires
    with the refresh token it carries.
    """
    return {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "domain": settings.cookie_domain,
        "path": settings.cookie_path,
        "expires": expires_at,
        "max_age": settings.refresh_ttl_seconds,
    }


def set_refresh_cookie(response: Response, settings: Settings, raw_token: str, expires_at: datetime) -> None:
    response.set_cookie(settings.cookie_name, value=raw_token, **build_refresh_cookie_options(settings, expires_at))


def clear_refresh_cookie(response: Response, settings: Settings) -> None:
    """Expire the refresh cookie. Attributes must match the ones it was set with."""
    response.delete_cookie(
        settings.cookie_name,
        path=settings.cookie_path,
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def apply_token_transport(
    response: Response,
    body: dict,
    settings: Settings,
    raw_refresh_token: str,
    expires_at: datetime,
    user_agent: str | None,
) -> dict:
    """Attach the refresh token to exactly one channel and return the body.

    Browser: cookie set, refreshToken removed from the body.
    Other clients: refreshToken added to the body, no cookie.
    """
    body = dict(body)
    if is_browser_client(user_agent):
        set_refresh_cookie(response, settings, raw_refresh_token, expires_at)
        body.pop("refreshToken", None)
    else:
        body["refreshToken"] = raw_refresh_token
    return body
