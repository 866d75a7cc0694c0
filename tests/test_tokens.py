"""Tests for signed access and refresh tokens."""
from datetime import timedelta

import jwt
import pytest

from gatekeeper.core.exceptions import ExpiredError, InvalidSignatureError
from gatekeeper.features.sessions.tokens import ACCESS, REFRESH, TokenService, fingerprint


@pytest.fixture
def tokens(clock) -> TokenService:
    return TokenService(clock, access_secret="access-test-secret", refresh_secret="refresh-test-secret")


class TestTokenIssuance:
    def test_access_token_carries_session_claims(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "sess-1", ["role-a"], clock.now() + timedelta(minutes=15))
        claims = tokens.decode(token, ACCESS)
        assert claims["userId"] == "user-1"
        assert claims["sid"] == "sess-1"
        assert claims["roles"] == ["role-a"]
        assert claims["type"] == ACCESS
        assert "permissions" not in claims

    def test_snapshot_permissions_are_embedded(self, tokens, clock):
        token = tokens.issue_access_token(
            "user-1", "sess-1", [], clock.now() + timedelta(minutes=15), permissions=["orders.read"]
        )
        assert tokens.decode(token, ACCESS)["permissions"] == ["orders.read"]

    def test_each_token_gets_a_unique_id(self, tokens, clock):
        expires = clock.now() + timedelta(minutes=15)
        first = tokens.decode(tokens.issue_access_token("u", "s", [], expires), ACCESS)
        second = tokens.decode(tokens.issue_access_token("u", "s", [], expires), ACCESS)
        assert first["jti"] != second["jti"]

    def test_equal_secrets_are_rejected(self, clock):
        with pytest.raises(ValueError):
            TokenService(clock, access_secret="same", refresh_secret="same")

    def test_fingerprint_is_sha256_hex(self):
        digest = fingerprint("abc")
        assert len(digest) == 64
        assert digest == fingerprint("abc")
        assert digest != fingerprint("abd")


class TestTokenVerification:
    def test_refresh_token_is_not_accepted_as_access(self, tokens, clock):
        token = tokens.issue_refresh_token("user-1", "sess-1", [], clock.now() + timedelta(days=1))
        with pytest.raises(InvalidSignatureError):
            tokens.decode(token, ACCESS)

    def test_access_token_is_not_accepted_as_refresh(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "sess-1", [], clock.now() + timedelta(minutes=5))
        with pytest.raises(InvalidSignatureError):
            tokens.decode(token, REFRESH)

    def test_tampered_token_is_rejected(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "sess-1", [], clock.now() + timedelta(minutes=5))
        header, payload, signature = token.split(".")
        flipped = signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")
        with pytest.raises(InvalidSignatureError):
            tokens.decode(".".join([header, payload, flipped]), ACCESS)

    def test_garbage_is_rejected(self, tokens):
        with pytest.raises(InvalidSignatureError):
            tokens.decode("not-a-jwt", ACCESS)

    def test_foreign_audience_is_rejected(self, tokens, clock):
        expires = clock.now() + timedelta(minutes=5)
        claims = tokens._claims(ACCESS, "user-1", "sess-1", [], expires)
        claims["aud"] = "someone-else"
        token = jwt.encode(claims, "access-test-secret", algorithm="HS256")
        with pytest.raises(InvalidSignatureError):
            tokens.decode(token, ACCESS)

    def test_expiry_follows_the_injected_clock(self, tokens, clock):
        token = tokens.issue_access_token("user-1", "sess-1", [], clock.now() + timedelta(minutes=15))
        clock.advance(minutes=14)
        assert tokens.decode(token, ACCESS)["userId"] == "user-1"
        clock.advance(minutes=1)
        with pytest.raises(ExpiredError):
            tokens.decode(token, ACCESS)
