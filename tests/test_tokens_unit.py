"""Tests for access/refresh token minting and verification."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from warden.service.errors import TokenExpiredError, TokenInvalidError
from warden.service.tokens import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, TokenIssuer
from warden.storage.models import User


@pytest.fixture
def user():
    return User(id="user-1", email="a@x.com", name="A")


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    def test_access_token_claims(self, issuer, user, settings):
        token, expires_at = issuer.issue_access_token(user)
        payload = _payload(token)

        assert payload["sub"] == "user-1"
        assert payload["email"] == "a@x.com"
        assert payload["token_type"] == ACCESS_TOKEN_TYPE
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] == int(expires_at.timestamp())

    def test_access_ttl_follows_settings(self, issuer, user, settings):
        before = datetime.now(timezone.utc)
        _, expires_at = issuer.issue_access_token(user)

        delta = expires_at - before
        assert timedelta(minutes=settings.access_token_ttl_minutes) - timedelta(seconds=2) <= delta
        assert delta <= timedelta(minutes=settings.access_token_ttl_minutes, seconds=1)

    def test_refresh_tokens_never_collide(self, issuer, user):
        tokens = {issuer.issue_refresh_token(user)[0] for _ in range(50)}

        assert len(tokens) == 50

    def test_refresh_token_has_no_email(self, issuer, user):
        token, _ = issuer.issue_refresh_token(user)

        assert "email" not in _payload(token)
        assert _payload(token)["token_type"] == REFRESH_TOKEN_TYPE

    def test_issue_pair(self, issuer, user):
        pair = issuer.issue_pair(user)

        assert pair.token_type == "bearer"
        assert pair.refresh_expires_at > pair.access_expires_at


class TestVerify:
    def test_round_trip(self, issuer, user):
        token, expires_at = issuer.issue_access_token(user)

        claims = issuer.verify_access_token(token)

        assert claims.principal_id == "user-1"
        assert claims.email == "a@x.com"
        assert claims.expires_at == expires_at
        assert claims.token_id

    def test_expired_access_token_rejected(self, settings, user):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token, _ = TokenIssuer(settings, clock=lambda: past).issue_access_token(user)

        with pytest.raises(TokenExpiredError) as exc_info:
            TokenIssuer(settings).verify_access_token(token)

        assert exc_info.value.reason == "token_expired"
        assert exc_info.value.status_code == 401

    def test_token_one_second_past_expiry_rejected(self, settings, user):
        issued_at = datetime.now(timezone.utc)
        token, expires_at = TokenIssuer(settings, clock=lambda: issued_at).issue_access_token(user)
        verifier = TokenIssuer(settings, clock=lambda: expires_at + timedelta(seconds=1))

        with pytest.raises(TokenExpiredError):
            verifier.verify_access_token(token)

    def test_token_rejected_at_exact_expiry(self, settings, user):
        issued_at = datetime.now(timezone.utc)
        token, expires_at = TokenIssuer(settings, clock=lambda: issued_at).issue_access_token(user)

        with pytest.raises(TokenExpiredError):
            TokenIssuer(settings, clock=lambda: expires_at).verify_access_token(token)

    def test_token_accepted_just_before_expiry(self, settings, user):
        issued_at = datetime.now(timezone.utc)
        token, expires_at = TokenIssuer(settings, clock=lambda: issued_at).issue_access_token(user)
        verifier = TokenIssuer(settings, clock=lambda: expires_at - timedelta(seconds=1))

        assert verifier.verify_access_token(token).principal_id == "user-1"

    def test_tampered_payload_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user)
        header, payload, signature = token.split(".")
        forged = _payload(token)
        forged["sub"] = "someone-else"

        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(f"{header}.{_b64(forged)}.{signature}")

    def test_wrong_key_rejected(self, settings, user):
        other = settings.model_copy(update={"jwt_secret": "another-secret-another-secret-another-secret"})
        token, _ = TokenIssuer(other).issue_access_token(user)

        with pytest.raises(TokenInvalidError):
            TokenIssuer(settings).verify_access_token(token)

    def test_alg_none_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user)
        _, payload, _ = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(f"{header}.{payload}.")

    def test_refresh_token_rejected_as_access(self, issuer, user):
        token, _ = issuer.issue_refresh_token(user)

        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(token)

    def test_wrong_audience_rejected(self, settings, user):
        other = settings.model_copy(update={"jwt_audience": "someone-else"})
        token, _ = TokenIssuer(other).issue_access_token(user)

        with pytest.raises(TokenInvalidError):
            TokenIssuer(settings).verify_access_token(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "é.é.é"])
    def test_malformed_tokens_rejected(self, issuer, token):
        with pytest.raises(TokenInvalidError):
            issuer.verify_access_token(token)

    def test_decode_without_expiry_check(self, settings, user):
        past = datetime.now(timezone.utc) - timedelta(days=30)
        token, _ = TokenIssuer(settings, clock=lambda: past).issue_refresh_token(user)

        payload = TokenIssuer(settings).decode(
            token, expected_type=REFRESH_TOKEN_TYPE, verify_exp=False
        )

        assert payload["sub"] == "user-1"
