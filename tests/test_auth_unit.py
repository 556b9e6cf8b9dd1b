"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Registration and login
- Device cap enforcement on issuance
- Refresh rotation and replay rejection
- Logout and deactivation
"""

import asyncio
import dataclasses
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from warden.service.auth import INVALID_CREDENTIALS_MESSAGE, AuthService
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from warden.service.tokens import TokenIssuer

PASSWORD = "Passw0rd1"


def _recorded(calls, name, method):
    def wrapper(*args, **kwargs):
        calls.append(name)
        return method(*args, **kwargs)

    return wrapper


@pytest.fixture
def registered(auth_service):
    """Register a principal and return the registration result."""
    return asyncio.run(auth_service.register("a@x.com", PASSWORD, "A"))


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_password_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    def test_same_password_produces_different_hashes(self, auth_service):
        """Salting makes every hash unique."""
        hash1, _ = auth_service._hash_password(PASSWORD)
        hash2, _ = auth_service._hash_password(PASSWORD)

        assert hash1 != hash2

    def test_verify_password(self, auth_service, registered):
        assert auth_service.verify_password(registered.user.id, PASSWORD) is True
        assert auth_service.verify_password(registered.user.id, "wrong") is False

    def test_verify_password_missing_record(self, auth_service):
        assert auth_service.verify_password("no-such-user", PASSWORD) is False

    def test_password_rehashed_when_cost_changes(self, memory_store, settings, registered):
        stronger = settings.model_copy(
            update={"test_mode": False, "password_hash_time_cost": 2, "password_hash_memory_kib": 2048}
        )
        service = AuthService(memory_store, stronger)
        before = memory_store.get_password_hash(registered.user.id)

        assert service.verify_password(registered.user.id, PASSWORD) is True

        after = memory_store.get_password_hash(registered.user.id)
        assert after != before
        assert "m=2048,t=2" in after


class TestRegister:
    async def test_register_returns_user_and_tokens(self, auth_service, memory_store):
        result = await auth_service.register("A@X.com", PASSWORD, "A")

        assert result.user.email == "a@x.com"
        assert result.user.name == "A"
        assert result.user.is_active
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert memory_store.count_sessions(result.user.id) == 1

    async def test_register_does_not_expose_secret(self, auth_service):
        result = await auth_service.register("a@x.com", PASSWORD, "A")

        assert not hasattr(result.user, "password_hash")

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("a@x.com", PASSWORD, "A")

        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register("a@x.com", PASSWORD, "A")

        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == "conflict"

    async def test_duplicate_email_differs_only_in_case(self, auth_service):
        await auth_service.register("a@x.com", PASSWORD, "A")

        with pytest.raises(ConflictError):
            await auth_service.register("A@X.COM", PASSWORD, "A")


class TestLogin:
    async def test_login_then_verify_returns_same_principal(self, auth_service, registered):
        result = await auth_service.login("a@x.com", PASSWORD)

        claims = await auth_service.verify_access_token(result.tokens.access_token)

        assert claims.principal_id == registered.user.id
        assert claims.email == "a@x.com"

    async def test_wrong_password_and_unknown_email_indistinguishable(
        self, auth_service, registered
    ):
        with pytest.raises(AuthenticationError) as wrong_pw:
            await auth_service.login("a@x.com", "wrongpass")
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("unknown@x.com", "anything")

        assert type(wrong_pw.value) is type(unknown.value)
        assert wrong_pw.value.message == unknown.value.message == INVALID_CREDENTIALS_MESSAGE
        assert wrong_pw.value.detail == unknown.value.detail
        assert wrong_pw.value.status_code == unknown.value.status_code == 401

    async def test_deactivated_principal_cannot_login(self, auth_service, registered):
        await auth_service.deactivate_user(registered.user.id)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login("a@x.com", PASSWORD)

        assert exc_info.value.message == INVALID_CREDENTIALS_MESSAGE

    async def test_deactivation_between_verification_and_issuance(
        self, auth_service, memory_store, registered
    ):
        user = await auth_service.verify_credentials("a@x.com", PASSWORD)
        await auth_service.deactivate_user(user.id)

        with pytest.raises(ForbiddenError):
            auth_service._issue(user)

        assert memory_store.count_sessions(user.id) == 0

    async def test_unknown_and_known_email_cost_the_same_lookups(
        self, auth_service, memory_store, registered, monkeypatch
    ):
        calls = []
        for name in ("get_login_record", "get_user_by_email", "get_password_hash", "get_user"):
            monkeypatch.setattr(memory_store, name, _recorded(calls, name, getattr(memory_store, name)))

        for email in ("a@x.com", "unknown@x.com"):
            with pytest.raises(AuthenticationError):
                await auth_service.verify_credentials(email, "Wrongpass1")

        assert calls == ["get_login_record", "get_login_record"]

    async def test_email_can_be_registered_again_after_deactivation(
        self, auth_service, registered
    ):
        await auth_service.deactivate_user(registered.user.id)

        again = await auth_service.register("a@x.com", PASSWORD, "A2")

        assert again.user.id != registered.user.id


class TestDeviceCap:
    async def test_logins_beyond_cap_keep_newest_sessions(
        self, auth_service, memory_store, settings, registered
    ):
        issued = [registered.tokens.refresh_token]
        for _ in range(settings.max_devices + 2):
            result = await auth_service.login("a@x.com", PASSWORD)
            issued.append(result.tokens.refresh_token)

        user_id = registered.user.id
        assert memory_store.count_sessions(user_id) == settings.max_devices
        retained = [s.token for s in memory_store.list_sessions(user_id)]
        assert retained == issued[-settings.max_devices:]

    async def test_evicted_token_cannot_refresh(self, auth_service, settings, registered):
        for _ in range(settings.max_devices):
            await auth_service.login("a@x.com", PASSWORD)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(registered.tokens.refresh_token)

    def test_concurrent_logins_never_exceed_cap(self, auth_service, memory_store, settings):
        user = asyncio.run(auth_service.register("a@x.com", PASSWORD, "A")).user

        def _login(_):
            return asyncio.run(auth_service.login("a@x.com", PASSWORD))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(_login, range(16)))

        assert memory_store.count_sessions(user.id) == settings.max_devices

    async def test_cap_is_per_principal(self, auth_service, memory_store, settings):
        first = await auth_service.register("a@x.com", PASSWORD, "A")
        second = await auth_service.register("b@x.com", PASSWORD, "B")
        for _ in range(settings.max_devices + 1):
            await auth_service.login("a@x.com", PASSWORD)

        assert memory_store.count_sessions(first.user.id) == settings.max_devices
        assert memory_store.count_sessions(second.user.id) == 1


class TestRefresh:
    async def test_refresh_rotates_token(self, auth_service, memory_store, registered):
        old = registered.tokens.refresh_token

        tokens = await auth_service.refresh(old)

        assert tokens.refresh_token != old
        assert memory_store.get_session_by_token(old) is None
        assert memory_store.get_session_by_token(tokens.refresh_token) is not None
        claims = await auth_service.verify_access_token(tokens.access_token)
        assert claims.principal_id == registered.user.id

    async def test_refresh_is_single_use(self, auth_service, registered):
        old = registered.tokens.refresh_token
        await auth_service.refresh(old)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(old)

    def test_concurrent_refresh_only_one_wins(self, auth_service, registered):
        token = registered.tokens.refresh_token

        def _refresh(_):
            try:
                return asyncio.run(auth_service.refresh(token))
            except AuthenticationError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(_refresh, range(6)))

        failures = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(outcomes) - len(failures) == 1
        assert all(isinstance(f, TokenInvalidError) for f in failures)

    async def test_refresh_does_not_grow_session_count(self, auth_service, memory_store, registered):
        token = registered.tokens.refresh_token
        for _ in range(5):
            token = (await auth_service.refresh(token)).refresh_token

        assert memory_store.count_sessions(registered.user.id) == 1

    async def test_access_token_rejected_as_refresh(self, auth_service, registered):
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(registered.tokens.access_token)

    async def test_garbage_refresh_token(self, auth_service):
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh("not-a-token")

    async def test_expired_session_is_deleted(self, memory_store, settings, registered):
        later = datetime.now(timezone.utc) + timedelta(minutes=settings.refresh_token_ttl_minutes + 1)
        service = AuthService(
            memory_store, settings, issuer=TokenIssuer(settings, clock=lambda: later)
        )
        token = registered.tokens.refresh_token

        with pytest.raises(TokenExpiredError):
            await service.refresh(token)

        assert memory_store.get_session_by_token(token) is None
        with pytest.raises(TokenInvalidError):
            await service.refresh(token)

    async def test_stored_expiry_matches_signed_expiry(self, auth_service, memory_store, registered):
        session = memory_store.get_session_by_token(registered.tokens.refresh_token)
        payload = auth_service.issuer.decode(
            registered.tokens.refresh_token, expected_type="refresh"
        )

        assert session.expires_at == registered.tokens.refresh_expires_at
        assert payload["exp"] == int(session.expires_at.timestamp())

    async def test_deactivated_principal_cannot_refresh(self, auth_service, memory_store, registered):
        # Re-plant the session so the deactivation check itself is exercised
        token = registered.tokens.refresh_token
        session = memory_store.get_session_by_token(token)
        await auth_service.deactivate_user(registered.user.id)
        memory_store.sessions[token] = session

        with pytest.raises(ForbiddenError):
            await auth_service.refresh(token)

        assert memory_store.get_session_by_token(token) is None

    async def test_deactivation_racing_refresh_blocks_rotation(
        self, auth_service, memory_store, registered, monkeypatch
    ):
        token = registered.tokens.refresh_token
        session = memory_store.get_session_by_token(token)
        real_get_user = memory_store.get_user

        def get_user_then_deactivate(user_id, *, include_deactivated=False):
            user = real_get_user(user_id, include_deactivated=include_deactivated)
            if user is None or not user.is_active:
                return user
            # Hand back the still-active view, then tombstone the principal
            snapshot = dataclasses.replace(user)
            memory_store.deactivate_user(user_id)
            memory_store.sessions[token] = session
            return snapshot

        monkeypatch.setattr(memory_store, "get_user", get_user_then_deactivate)

        with pytest.raises(ForbiddenError):
            await auth_service.refresh(token)

        assert memory_store.count_sessions(registered.user.id) == 0

    async def test_deactivation_revokes_sessions(self, auth_service, memory_store, registered):
        await auth_service.login("a@x.com", PASSWORD)

        await auth_service.deactivate_user(registered.user.id)

        assert memory_store.count_sessions(registered.user.id) == 0
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(registered.tokens.refresh_token)


class TestLogout:
    async def test_logout_is_idempotent(self, auth_service, memory_store, registered):
        token = registered.tokens.refresh_token

        await auth_service.logout(token)
        await auth_service.logout(token)

        assert memory_store.get_session_by_token(token) is None

    async def test_logout_leaves_other_devices(self, auth_service, memory_store, registered):
        second = await auth_service.login("a@x.com", PASSWORD)

        await auth_service.logout(registered.tokens.refresh_token)

        assert memory_store.get_session_by_token(second.tokens.refresh_token) is not None

    async def test_logged_out_token_cannot_refresh(self, auth_service, registered):
        await auth_service.logout(registered.tokens.refresh_token)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(registered.tokens.refresh_token)


class TestCurrentUser:
    async def test_get_current_user(self, auth_service, registered):
        claims = await auth_service.verify_access_token(registered.tokens.access_token)

        user = await auth_service.get_current_user(claims)

        assert user.id == registered.user.id

    async def test_deactivated_user_token_rejected(self, auth_service, registered):
        claims = await auth_service.verify_access_token(registered.tokens.access_token)
        await auth_service.deactivate_user(registered.user.id)

        with pytest.raises(TokenInvalidError):
            await auth_service.get_current_user(claims)

    async def test_deactivate_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.deactivate_user("missing")


class TestUpdateUser:
    async def test_profile_update(self, auth_service, registered):
        user = await auth_service.update_user(registered.user.id, name="Ann", email=" Ann@X.com ")

        assert (user.name, user.email) == ("Ann", "ann@x.com")
        assert (await auth_service.login("ann@x.com", PASSWORD)).user.id == registered.user.id

    async def test_taken_email_conflicts(self, auth_service, registered):
        other = await auth_service.register("b@x.com", PASSWORD, "B")

        with pytest.raises(ConflictError):
            await auth_service.update_user(other.user.id, email="a@x.com")

    async def test_password_change_revokes_sessions(self, auth_service, memory_store, registered):
        await auth_service.login("a@x.com", PASSWORD)

        await auth_service.update_user(registered.user.id, password="N3wPassword")

        assert memory_store.count_sessions(registered.user.id) == 0
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh(registered.tokens.refresh_token)
        with pytest.raises(AuthenticationError):
            await auth_service.login("a@x.com", PASSWORD)
        await auth_service.login("a@x.com", "N3wPassword")

    async def test_profile_update_keeps_sessions(self, auth_service, memory_store, registered):
        await auth_service.update_user(registered.user.id, name="Ann")

        assert memory_store.count_sessions(registered.user.id) == 1

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.update_user("missing", name="X")

    async def test_deactivated_users_are_hidden(self, auth_service, registered):
        other = await auth_service.register("b@x.com", PASSWORD, "B")
        await auth_service.deactivate_user(other.user.id)

        assert [u.id for u in await auth_service.list_users()] == [registered.user.id]
        with pytest.raises(NotFoundError):
            await auth_service.get_user(other.user.id)
