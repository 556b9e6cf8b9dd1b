from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import TokenExpiredError, TokenInvalidError
from warden.storage.models import AccessClaims, TokenPair, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenIssuer:
    """Mints and verifies HS256 access and refresh tokens.

    Access tokens are self-contained: verifying one needs only the signing
    key. A refresh token's signature is necessary but never sufficient, the
    session store decides whether it is still live.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._key = settings.jwt_secret.encode()

    def now(self) -> datetime:
        return self._clock()

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(self, user: User, token_type: str, expires_at: datetime) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": token_type,
            "iat": int(self.now().timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }

    def issue_access_token(self, user: User) -> tuple[str, datetime]:
        expires_at = (self.now() + self.access_ttl).replace(microsecond=0)
        claims = self._base_claims(user, ACCESS_TOKEN_TYPE, expires_at)
        claims["email"] = user.email
        return self._encode_jwt(claims), expires_at

    def issue_refresh_token(self, user: User) -> tuple[str, datetime]:
        """Mint a refresh token whose ``exp`` equals the stored session expiry."""
        expires_at = (self.now() + self.refresh_ttl).replace(microsecond=0)
        claims = self._base_claims(user, REFRESH_TOKEN_TYPE, expires_at)
        # Random nonce in addition to jti: token values must never collide
        claims["nonce"] = secrets.token_urlsafe(16)
        return self._encode_jwt(claims), expires_at

    def issue_pair(self, user: User) -> TokenPair:
        access_token, access_exp = self.issue_access_token(user)
        refresh_token, refresh_exp = self.issue_refresh_token(user)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def decode(
        self, token: str, *, expected_type: str, verify_exp: bool = True
    ) -> dict[str, Any]:
        """Validate structure, algorithm, signature, issuer, audience and type.

        Raises :class:`TokenInvalidError` for anything forged or malformed and
        :class:`TokenExpiredError` when ``exp`` has elapsed and ``verify_exp``
        is set.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("invalid token")
        if not isinstance(payload, dict):
            raise TokenInvalidError("invalid token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("invalid token")
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError("invalid token")
        if not payload.get("sub"):
            raise TokenInvalidError("invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("invalid token")
        # No leeway: a token is dead from the second its exp is reached
        if verify_exp and exp_ts <= self.now().timestamp():
            raise TokenExpiredError("token expired")
        return payload

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self.decode(token, expected_type=ACCESS_TOKEN_TYPE)
        return AccessClaims(
            principal_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
        )
