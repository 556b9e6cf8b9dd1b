from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger, hash_email
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from warden.service.tokens import REFRESH_TOKEN_TYPE, TokenIssuer
from warden.storage.errors import ConstraintViolation
from warden.storage.models import AccessClaims, RefreshSession, TokenPair, User

logger = get_logger(__name__)

# Same text for unknown email, wrong password and deactivated account.
INVALID_CREDENTIALS_MESSAGE = "invalid email or password"
PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str = PASSWORD_ALGO
    ) -> User: ...

    def get_user(self, user_id: str, *, include_deactivated: bool = False) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_login_record(self, email: str) -> Optional[Tuple[User, str]]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def list_users(self) -> List[User]: ...

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str = PASSWORD_ALGO
    ) -> None: ...

    def deactivate_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, user_id: str, token: str, expires_at: datetime) -> RefreshSession: ...

    def get_session_by_token(self, token: str) -> Optional[RefreshSession]: ...

    def delete_session(self, token: str) -> bool: ...

    def count_sessions(self, user_id: str) -> int: ...

    def list_sessions(self, user_id: str) -> List[RefreshSession]: ...

    def delete_oldest_sessions(self, user_id: str, keep_count: int) -> int: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def issue_session(
        self, user_id: str, token: str, expires_at: datetime, max_devices: int
    ) -> Tuple[RefreshSession, int]: ...

    def rotate_session(
        self, old_token: str, new_token: str, expires_at: datetime, max_devices: int
    ) -> Optional[Tuple[RefreshSession, int]]: ...


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Credential verification, token issuance and refresh-session lifecycle.

    The store is the single authority on refresh tokens; nothing about a
    session is cached in-process between calls.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.issuer = issuer or TokenIssuer(settings)
        self._pwd_hasher = hasher or self._build_hasher(settings)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    @staticmethod
    def _build_hasher(settings: Settings) -> PasswordHasher:
        if settings.test_mode:
            return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
        return PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
            type=Type.ID,
        )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a principal's password, upgrading the hash if its cost changed."""
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        return self._check_password(user_id, stored_hash, password)

    def _check_password(self, user_id: str, stored_hash: str, password: str) -> bool:
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable", user_id=user_id)
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            digest, algo = self._hash_password(password)
            self.store.save_password(user_id, digest, algo)
            self.logger.info("password_rehashed", user_id=user_id)
        return True

    def _burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    async def verify_credentials(self, email: str, password: str) -> User:
        """Return the active principal owning ``email`` if ``password`` matches.

        Unknown email, wrong password and deactivated principal raise the same
        :class:`AuthenticationError` so callers cannot enumerate accounts.
        """
        # Principal and hash come back from one lookup, so a known email costs
        # the store exactly what an unknown one does.
        record = self.store.get_login_record(email)
        if record is None:
            self._burn_verification(password)
            self.logger.info(
                "credentials_rejected", email_hash=hash_email(email), cause="unknown_principal"
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE, reason="invalid_credentials")
        user, stored_hash = record
        if not self._check_password(user.id, stored_hash, password):
            self.logger.info("credentials_rejected", user_id=user.id, cause="password_mismatch")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE, reason="invalid_credentials")
        return user

    def _raise_for_refused_issuance(self, user_id: str) -> None:
        """Map a store refusal to the principal's lifecycle error, if it has one.

        The store refuses to attach a session to a principal that is gone or
        tombstoned; that can only be observed here when deactivation raced the
        caller's own check.
        """
        current = self.store.get_user(user_id, include_deactivated=True)
        if current is None:
            raise NotFoundError("principal not found")
        if not current.is_active:
            self.logger.info("issuance_rejected_deactivated", user_id=user_id)
            raise ForbiddenError("account is deactivated")

    def _issue(self, user: User) -> TokenPair:
        tokens = self.issuer.issue_pair(user)
        try:
            _, evicted = self.store.issue_session(
                user.id, tokens.refresh_token, tokens.refresh_expires_at, self.settings.max_devices
            )
        except ConstraintViolation:
            self._raise_for_refused_issuance(user.id)
            raise
        if evicted:
            self.logger.info(
                "device_cap_evicted",
                user_id=user.id,
                evicted=evicted,
                max_devices=self.settings.max_devices,
            )
        return tokens

    async def register(self, email: str, password: str, name: str) -> AuthResult:
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized) is not None:
            raise ConflictError("email already registered", detail={"field": "email"})
        digest, algo = self._hash_password(password)
        try:
            user = self.store.create_user(normalized, name, digest, algo)
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("email already registered", detail={"field": "email"})
        tokens = self._issue(user)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def login(self, email: str, password: str) -> AuthResult:
        user = await self.verify_credentials(email, password)
        tokens = self._issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the presented token dies, a new pair is minted.

        Expiry is judged against the stored session, not the signed claim.
        Losing a concurrent rotation of the same token surfaces as an
        invalid token and is never retried here.
        """
        payload = self.issuer.decode(
            refresh_token, expected_type=REFRESH_TOKEN_TYPE, verify_exp=False
        )
        session = self.store.get_session_by_token(refresh_token)
        if session is None:
            # Authentic signature but no live session: rotated, evicted, or logged out
            self.logger.warning("refresh_token_reuse_detected", user_id=payload.get("sub"))
            raise TokenInvalidError("invalid refresh token")
        if session.user_id != str(payload.get("sub")):
            self.logger.error("refresh_token_subject_mismatch", session_id=session.id)
            raise TokenInvalidError("invalid refresh token")

        if session.is_expired(self.issuer.now()):
            self.store.delete_session(refresh_token)
            self.logger.info("refresh_token_expired", user_id=session.user_id)
            raise TokenExpiredError("refresh token expired")

        user = self.store.get_user(session.user_id, include_deactivated=True)
        if user is None:
            self.store.delete_session(refresh_token)
            raise NotFoundError("principal not found")
        if not user.is_active:
            self.store.delete_session(refresh_token)
            self.logger.info("refresh_rejected_deactivated", user_id=user.id)
            raise ForbiddenError("account is deactivated")

        new_token, refresh_exp = self.issuer.issue_refresh_token(user)
        try:
            rotated = self.store.rotate_session(
                refresh_token, new_token, refresh_exp, self.settings.max_devices
            )
        except ConstraintViolation:
            # Deactivated after the check above; the old session must not survive it
            self.store.delete_session(refresh_token)
            self._raise_for_refused_issuance(user.id)
            raise
        if rotated is None:
            self.logger.warning("refresh_rotation_conflict", user_id=user.id)
            raise TokenInvalidError("invalid refresh token")
        _, evicted = rotated
        if evicted:
            self.logger.info(
                "device_cap_evicted",
                user_id=user.id,
                evicted=evicted,
                max_devices=self.settings.max_devices,
            )
        access_token, access_exp = self.issuer.issue_access_token(user)
        self.logger.info("refresh_rotated", user_id=user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def logout(self, refresh_token: str) -> None:
        """Delete the session for ``refresh_token``; an absent one is not an error."""
        removed = self.store.delete_session(refresh_token) if refresh_token else False
        self.logger.info("logout", session_removed=removed)

    async def verify_access_token(self, token: str) -> AccessClaims:
        return self.issuer.verify_access_token(token)

    async def get_current_user(self, claims: AccessClaims) -> User:
        user = self.store.get_user(claims.principal_id)
        if user is None:
            raise TokenInvalidError("invalid token")
        return user

    async def deactivate_user(self, user_id: str) -> User:
        """Tombstone a principal and drop every refresh session it holds."""
        user = self.store.deactivate_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deactivated", user_id=user_id)
        return user

    async def list_users(self) -> List[User]:
        return self.store.list_users()

    async def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """Update profile fields and, optionally, the password.

        A new password revokes every refresh session the principal holds.
        """
        await self.get_user(user_id)
        try:
            user = self.store.update_user(
                user_id, name=name, email=email.strip().lower() if email else None
            )
        except ConstraintViolation:
            raise ConflictError("email already registered", detail={"field": "email"})
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if password is not None:
            digest, algo = self._hash_password(password)
            self.store.save_password(user_id, digest, algo)
            revoked = self.store.delete_user_sessions(user_id)
            self.logger.info("password_changed_sessions_revoked", user_id=user_id, revoked=revoked)
        self.logger.info("user_updated", user_id=user_id)
        return user
