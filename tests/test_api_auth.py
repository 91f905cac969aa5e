"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> middleware -> the
auth core -> SQLite -> response serialization and the error envelope.

Coverage:
  - Register/login/me/refresh/logout lifecycle for a non-browser client
  - Browser clients: refresh token only in an httpOnly cookie, never in the body
  - Error codes: USER_EXISTS, INVALID_CREDENTIALS, MISSING_REFRESH_TOKEN,
    INVALID_REFRESH_TOKEN, AUTH_HEADER_MISSING, INVALID_TOKEN, USER_NOT_FOUND
  - logout-all, forgot-password enumeration resistance, rate limiting
  - Database outage -> 503 STORE_UNAVAILABLE, not a credential error
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy import select

from auth.database import refresh_tokens
from conftest import BROWSER_UA, TEST_PASSWORD, BrokenEngine

REGISTER_BODY = {"email": "a@x.com", "password": TEST_PASSWORD, "fullName": "Ada Example"}


def _register(client: TestClient, **headers) -> dict:
    resp = client.post("/api/v1/auth/register", json=REGISTER_BODY, headers=headers or None)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _bearer(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}"}


class TestSessionLifecycle:
    def test_register_me_refresh_logout(self, api_client: TestClient) -> None:
        session = _register(api_client)
        assert session["user"]["email"] == "a@x.com"
        assert session["user"]["fullName"] == "Ada Example"
        assert session["user"]["provider"] == "email"
        assert session["user"]["businesses"] == []
        assert session["tokenType"] == "Bearer"
        assert session["expiresIn"] == 900
        assert "refreshExpiresAt" in session
        assert len(session["refreshToken"]) == 128

        me = api_client.get("/api/v1/auth/me", headers=_bearer(session["accessToken"]))
        assert me.status_code == 200
        assert me.json()["user"]["email"] == "a@x.com"
        assert me.json()["roles"] == []
        assert me.json()["businessIds"] == []

        rotated = api_client.post("/api/v1/auth/refresh", json={"refreshToken": session["refreshToken"]})
        assert rotated.status_code == 200
        new_session = rotated.json()
        assert new_session["refreshToken"] != session["refreshToken"]
        assert api_client.get("/api/v1/auth/me", headers=_bearer(new_session["accessToken"])).status_code == 200

        replay = api_client.post("/api/v1/auth/refresh", json={"refreshToken": session["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

        logout = api_client.post("/api/v1/auth/logout", json={"refreshToken": new_session["refreshToken"]})
        assert logout.status_code == 200

        after = api_client.post("/api/v1/auth/refresh", json={"refreshToken": new_session["refreshToken"]})
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

    def test_responses_never_expose_hashes(self, api_client: TestClient, db) -> None:
        session = _register(api_client)
        with db.connect() as conn:
            token_hash = conn.execute(select(refresh_tokens.c.token_hash)).scalar_one()
        text = api_client.get("/api/v1/auth/me", headers=_bearer(session["accessToken"])).text
        for body in (str(session), text):
            assert token_hash not in body
            assert "$2b$" not in body
            assert "password" not in body.lower()

    def test_login_returns_memberships(self, api_client: TestClient, make_user) -> None:
        make_user("owner@x.com", memberships=[("Acme", "owner"), ("Beta", "staff")])
        resp = api_client.post("/api/v1/auth/login", json={"email": "owner@x.com", "password": TEST_PASSWORD})
        assert resp.status_code == 200
        businesses = resp.json()["user"]["businesses"]
        assert [(b["name"], b["role"], b["isActive"]) for b in businesses] == [
            ("Acme", "owner", True),
            ("Beta", "staff", True),
        ]

        me = api_client.get("/api/v1/auth/me", headers=_bearer(resp.json()["accessToken"])).json()
        assert me["roles"] == ["owner", "staff"]
        assert me["businessIds"] == [b["id"] for b in businesses]

    def test_issuance_is_not_cacheable(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.headers["cache-control"] == "no-store"

    def test_logout_all(self, api_client: TestClient) -> None:
        first = _register(api_client)
        second = api_client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": TEST_PASSWORD}).json()

        resp = api_client.post("/api/v1/auth/logout-all", headers=_bearer(first["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 2

        for session in (first, second):
            again = api_client.post("/api/v1/auth/refresh", json={"refreshToken": session["refreshToken"]})
            assert again.status_code == 401

    def test_logout_is_idempotent_without_token(self, api_client: TestClient) -> None:
        assert api_client.post("/api/v1/auth/logout").status_code == 200
        assert api_client.post("/api/v1/auth/logout", json={"refreshToken": "unknown"}).status_code == 200


class TestBrowserTransport:
    def test_browser_login_uses_cookie_only(self, api_client: TestClient) -> None:
        session = _register(api_client, **{"User-Agent": BROWSER_UA})
        assert "refreshToken" not in session

        resp = api_client.post(
            "/api/v1/auth/login",
            json={"email": "a@x.com", "password": TEST_PASSWORD},
            headers={"User-Agent": BROWSER_UA},
        )
        assert resp.status_code == 200
        assert "refreshToken" not in resp.json()
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("bizpilot_refresh=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "SameSite=strict" in cookie

    def test_browser_refresh_and_logout_with_cookie(self, api_client: TestClient) -> None:
        _register(api_client, **{"User-Agent": BROWSER_UA})
        old_cookie = api_client.cookies.get("bizpilot_refresh")
        assert old_cookie

        resp = api_client.post("/api/v1/auth/refresh", headers={"User-Agent": BROWSER_UA})
        assert resp.status_code == 200, resp.text
        assert "refreshToken" not in resp.json()
        new_cookie = api_client.cookies.get("bizpilot_refresh")
        assert new_cookie and new_cookie != old_cookie

        logout = api_client.post("/api/v1/auth/logout", headers={"User-Agent": BROWSER_UA})
        assert logout.status_code == 200
        assert "bizpilot_refresh" in logout.headers["set-cookie"]
        assert "Max-Age=0" in logout.headers["set-cookie"]

        stale = api_client.post("/api/v1/auth/refresh", json={"refreshToken": new_cookie})
        assert stale.status_code == 401


class TestErrors:
    def test_duplicate_registration(self, api_client: TestClient) -> None:
        _register(api_client)
        resp = api_client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "USER_EXISTS"

    def test_register_validation(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/register", json={"email": "not-an-email", "password": "short", "fullName": "A"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_bad_credentials_are_undifferentiated(self, api_client: TestClient) -> None:
        _register(api_client)
        wrong_password = api_client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "nope-nope"})
        unknown_email = api_client.post("/api/v1/auth/login", json={"email": "b@x.com", "password": TEST_PASSWORD})
        for resp in (wrong_password, unknown_email):
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "INVALID_CREDENTIALS"
            assert resp.headers["www-authenticate"] == "Bearer"
        assert wrong_password.json() == unknown_email.json()

    def test_missing_refresh_token(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/refresh")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MISSING_REFRESH_TOKEN"

    def test_me_requires_header(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_HEADER_MISSING"

    def test_me_rejects_garbage_token(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me", headers=_bearer("garbage"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_TOKEN"

    def test_me_for_deleted_user(self, api_client: TestClient, user_store) -> None:
        session = _register(api_client)
        user_store.delete_user(session["user"]["id"])
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(session["accessToken"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "USER_NOT_FOUND"

    def test_logout_all_requires_auth(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/logout-all")
        assert resp.status_code == 401

    def test_store_outage_is_503(self, api_client: TestClient, db, monkeypatch) -> None:
        monkeypatch.setattr(db, "engine", BrokenEngine())
        resp = api_client.post("/api/v1/auth/refresh", json={"refreshToken": "a" * 128})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "STORE_UNAVAILABLE"


class TestForgotPassword:
    def test_same_answer_for_known_and_unknown(self, api_client: TestClient) -> None:
        _register(api_client)
        known = api_client.post("/api/v1/auth/forgot-password", json={"email": "a@x.com"})
        unknown = api_client.post("/api/v1/auth/forgot-password", json={"email": "nobody@x.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()


class TestRateLimit:
    def test_login_rate_limited(self, api_client: TestClient) -> None:
        body = {"email": "nobody@x.com", "password": TEST_PASSWORD}
        statuses = [api_client.post("/api/v1/auth/login", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_forgot_password_rate_limited(self, api_client: TestClient) -> None:
        body = {"email": "nobody@x.com"}
        statuses = [api_client.post("/api/v1/auth/forgot-password", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429

    def test_rate_limited_response_uses_error_envelope(self, api_client: TestClient) -> None:
        _register(api_client)
        for _ in range(9):
            assert api_client.post("/api/v1/auth/register", json=REGISTER_BODY).status_code == 409
        resp = api_client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RATE_LIMITED"
        assert "retry-after" in resp.headers
