"""
tests/test_tokens.py -- Unit tests for the access-token codec and secret helpers.

Covers:
  - sign/decode round trip keeps roles and businessIds order and duplicates
  - wire claim names, issuer, audience and ~15 minute expiry
  - every decode failure (bad signature, expiry, wrong iss/aud, garbage,
    ill-typed claims) surfaces as the single INVALID_TOKEN error
  - refresh secret shape and SHA-256 hashing
  - bcrypt helpers and authenticate_user() timing-equalized failure paths
"""

from __future__ import annotations

import hashlib
import time
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import InvalidToken
from auth.tokens import (
    ALGORITHM,
    TOKEN_AUDIENCE,
    TOKEN_ISSUER,
    AccessTokenCodec,
    authenticate_user,
    generate_refresh_token,
    hash_password,
    hash_refresh_token,
    verify_password,
)
from conftest import TEST_PASSWORD, TEST_SECRET


def _forge(payload: dict, secret: str = TEST_SECRET) -> str:
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def _valid_payload(**overrides) -> dict:
    payload = {
        "sub": "user-1",
        "roles": ["owner"],
        "businessIds": ["biz-1"],
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    payload.update(overrides)
    return payload


class TestAccessTokenCodec:
    def test_round_trip_preserves_parallel_arrays(self, codec: AccessTokenCodec) -> None:
        token = codec.sign("user-1", ["owner", "staff", "owner"], ["b1", "b2", "b3"])
        claims = codec.decode(token)
        assert claims.sub == "user-1"
        assert claims.roles == ["owner", "staff", "owner"]
        assert claims.business_ids == ["b1", "b2", "b3"]
        assert claims.iss == "bizpilot-api"
        assert claims.aud == "bizpilot-app"

    def test_empty_role_context_round_trips(self, codec: AccessTokenCodec) -> None:
        claims = codec.decode(codec.sign("user-1", [], []))
        assert claims.roles == []
        assert claims.business_ids == []

    def test_wire_claim_names(self, codec: AccessTokenCodec) -> None:
        token = codec.sign("user-1", ["owner"], ["b1"])
        raw = jwt.get_unverified_claims(token)
        assert set(raw) == {"sub", "roles", "businessIds", "iss", "aud", "exp"}

    def test_expiry_is_access_ttl(self, codec: AccessTokenCodec) -> None:
        before = int(time.time())
        claims = codec.decode(codec.sign("user-1", [], []))
        assert before + 900 - 5 <= claims.exp <= before + 900 + 5

    def test_expired_token_rejected(self, codec: AccessTokenCodec) -> None:
        token = _forge(_valid_payload(exp=datetime.now(timezone.utc) - timedelta(seconds=10)))
        with pytest.raises(InvalidToken):
            codec.decode(token)

    def test_wrong_secret_rejected(self, codec: AccessTokenCodec) -> None:
        token = _forge(_valid_payload(), secret="another-secret-that-is-long-enough-to-sign")
        with pytest.raises(InvalidToken):
            codec.decode(token)

    def test_wrong_audience_rejected(self, codec: AccessTokenCodec) -> None:
        with pytest.raises(InvalidToken):
            codec.decode(_forge(_valid_payload(aud="someone-else")))

    def test_wrong_issuer_rejected(self, codec: AccessTokenCodec) -> None:
        with pytest.raises(InvalidToken):
            codec.decode(_forge(_valid_payload(iss="someone-else")))

    def test_garbage_rejected(self, codec: AccessTokenCodec) -> None:
        with pytest.raises(InvalidToken):
            codec.decode("not.a.jwt")

    def test_tampered_payload_rejected(self, codec: AccessTokenCodec) -> None:
        header, _payload, signature = codec.sign("user-1", ["staff"], ["b1"]).split(".")
        _h, forged_payload, _s = _forge(_valid_payload(roles=["owner"])).split(".")
        with pytest.raises(InvalidToken):
            codec.decode(f"{header}.{forged_payload}.{signature}")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"roles": "owner"},
            {"businessIds": [1, 2]},
            {"sub": ""},
        ],
    )
    def test_ill_typed_claims_rejected(self, codec: AccessTokenCodec, overrides: dict) -> None:
        with pytest.raises(InvalidToken):
            codec.decode(_forge(_valid_payload(**overrides)))

    def test_missing_role_claims_rejected(self, codec: AccessTokenCodec) -> None:
        payload = _valid_payload()
        del payload["businessIds"]
        with pytest.raises(InvalidToken):
            codec.decode(_forge(payload))

    def test_errors_share_one_message(self, codec: AccessTokenCodec) -> None:
        messages = set()
        for token in ("garbage", _forge(_valid_payload(aud="x")), _forge(_valid_payload(roles="owner"))):
            with pytest.raises(InvalidToken) as exc_info:
                codec.decode(token)
            messages.add(exc_info.value.message)
        assert messages == {"Invalid or expired token"}


class TestRefreshSecrets:
    def test_secret_is_128_hex_chars(self) -> None:
        raw = generate_refresh_token()
        assert len(raw) == 128
        int(raw, 16)

    def test_secrets_are_unique(self) -> None:
        assert len({generate_refresh_token() for _ in range(50)}) == 50

    def test_hash_is_sha256_hex(self) -> None:
        raw = generate_refresh_token()
        assert hash_refresh_token(raw) == hashlib.sha256(raw.encode()).hexdigest()
        assert hash_refresh_token(raw) != raw


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed.startswith("$2b$12$")
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_malformed_hash_is_false_not_error(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_authenticate_user_paths(self, user_store, make_user) -> None:
        user_id = make_user("a@x.com")
        make_user("oauth@x.com", password=None)

        assert authenticate_user(user_store, "a@x.com", TEST_PASSWORD).id == user_id
        assert authenticate_user(user_store, "a@x.com", "wrong-password") is None
        assert authenticate_user(user_store, "nobody@x.com", TEST_PASSWORD) is None
        assert authenticate_user(user_store, "oauth@x.com", TEST_PASSWORD) is None
