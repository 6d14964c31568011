"""Unit tests for the auth orchestrator.

Tests for:
- Registration and first-user bootstrap
- Login, lockout and deactivated accounts
- Refresh rotation and replay detection
- Logout scoping
- Password reset and email verification flows
- Best-effort auditing
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from crmcore.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionNotFoundError,
    SessionRevokedError,
)
from crmcore.service.tokens import TokenType
from crmcore.storage.models import AuditAction, AuditOutcome, Role

PASSWORD = "Secr3tPW!"


async def _register(auth_service, email="alice@acme.com", org="Acme", password=PASSWORD):
    return await auth_service.register(
        org, email, password, first_name="Alice", last_name="Anders"
    )


class TestRegister:
    async def test_first_user_is_verified_admin(self, auth_service):
        result = await _register(auth_service)

        assert result.user.role == Role.ADMIN
        assert result.user.email_verified is True
        assert result.user.organization_name == "Acme"
        assert result.user.first_name == "Alice"
        assert result.tokens.access_token
        assert result.tokens.refresh_token

    async def test_later_users_are_unverified_reps(self, auth_service):
        first = await _register(auth_service)
        second = await _register(auth_service, email="bob@globex.com", org="Globex")

        assert second.user.role == Role.REP
        assert second.user.email_verified is False
        assert second.user.org_id != first.user.org_id

    async def test_duplicate_email_rejected_across_orgs(self, auth_service):
        await _register(auth_service)

        with pytest.raises(DuplicateEmailError) as exc_info:
            await _register(auth_service, email="Alice@Acme.com", org="Other")
        assert exc_info.value.status_code == 409

    async def test_email_is_stored_lowercase(self, auth_service, memory_store):
        await _register(auth_service, email="  Carol@Example.COM ")
        assert memory_store.get_user_by_email("carol@example.com") is not None

    async def test_password_is_hashed_with_argon2id(self, auth_service, memory_store):
        result = await _register(auth_service)
        pwd_hash, algo = memory_store.get_password_record(result.user.id)
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert PASSWORD not in pwd_hash

    async def test_register_writes_create_audit(self, auth_service, memory_store):
        result = await _register(auth_service)
        events = memory_store.list_audit_events(result.user.org_id)
        assert [e.action for e in events] == [AuditAction.CREATE]


class TestLogin:
    async def test_successful_login(self, auth_service, memory_store, clock):
        await _register(auth_service)

        result = await auth_service.login("ALICE@acme.com", PASSWORD, ip_address="10.0.0.1")

        assert result.user.email == "alice@acme.com"
        assert result.user.last_login_at == clock.now
        user = memory_store.get_user(result.user.id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None

    async def test_unknown_email_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth_service.login("ghost@acme.com", PASSWORD)
        assert exc_info.value.message == "invalid email or password"

    async def test_wrong_password_increments_counter(self, auth_service, memory_store):
        result = await _register(auth_service)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@acme.com", "wrong-password")

        assert memory_store.get_user(result.user.id).failed_login_attempts == 1
        failures = [
            e
            for e in memory_store.list_audit_events(result.user.org_id)
            if e.outcome == AuditOutcome.FAILURE
        ]
        assert len(failures) == 1
        assert failures[0].action == AuditAction.LOGIN

    async def test_sixth_attempt_is_locked_even_with_correct_password(self, auth_service):
        await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@acme.com", "wrong-password")

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("alice@acme.com", PASSWORD)
        assert exc_info.value.remaining_minutes == 30
        assert "30 minutes" in exc_info.value.message

    async def test_locked_attempt_does_not_touch_counter(self, auth_service, memory_store):
        result = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@acme.com", "wrong-password")

        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@acme.com", "wrong-password")
        assert memory_store.get_user(result.user.id).failed_login_attempts == 5

    async def test_lock_lifts_after_window(self, auth_service, memory_store, clock):
        result = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@acme.com", "wrong-password")

        clock.advance(minutes=10)
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("alice@acme.com", PASSWORD)
        assert exc_info.value.remaining_minutes == 20

        clock.advance(minutes=20)
        await auth_service.login("alice@acme.com", PASSWORD)
        user = memory_store.get_user(result.user.id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None

    async def test_deactivated_account_rejected(self, auth_service, memory_store):
        result = await _register(auth_service)
        memory_store.set_user_active(result.user.id, False)

        with pytest.raises(AccountDeactivatedError):
            await auth_service.login("alice@acme.com", PASSWORD)

    async def test_unverified_account_may_log_in(self, auth_service):
        await _register(auth_service)
        second = await _register(auth_service, email="bob@globex.com", org="Globex")
        assert second.user.email_verified is False

        result = await auth_service.login("bob@globex.com", PASSWORD)
        assert result.user.id == second.user.id


class TestTokens:
    async def test_pair_shares_session_id_and_family(self, auth_service):
        result = await _register(auth_service)
        tokens = result.tokens

        access = auth_service.codec.verify(tokens.access_token, TokenType.ACCESS)
        refresh = auth_service.codec.verify(tokens.refresh_token, TokenType.REFRESH)

        assert access.jti == refresh.jti == tokens.session_id
        assert access.token_family == refresh.token_family == tokens.token_family
        assert access.role == "ADMIN"
        assert access.org_id == result.user.org_id

    async def test_access_token_expires_after_fifteen_minutes(self, auth_service, clock):
        result = await _register(auth_service)
        clock.advance(minutes=15)

        with pytest.raises(InvalidTokenError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_verify_access_token_returns_context(self, auth_service):
        result = await _register(auth_service)

        ctx = await auth_service.verify_access_token(result.tokens.access_token)

        assert ctx.user_id == result.user.id
        assert ctx.org_id == result.user.org_id
        assert ctx.role == Role.ADMIN
        assert ctx.session_id == result.tokens.session_id

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        result = await _register(auth_service)
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_access_token(result.tokens.refresh_token)

    async def test_revoked_session_rejects_access_token(self, auth_service):
        result = await _register(auth_service)
        auth_service.sessions.revoke(result.tokens.session_id)

        with pytest.raises(SessionRevokedError):
            await auth_service.verify_access_token(result.tokens.access_token)


class TestRefresh:
    async def test_refresh_rotates_session(self, auth_service):
        result = await _register(auth_service)
        old = result.tokens

        new = await auth_service.refresh(old.refresh_token)

        assert new.session_id != old.session_id
        assert new.token_family == old.token_family
        assert auth_service.sessions.get_session(old.session_id) is None
        ctx = await auth_service.verify_access_token(new.access_token)
        assert ctx.session_id == new.session_id

    async def test_new_refresh_token_jti_matches_new_session(self, auth_service):
        result = await _register(auth_service)
        new = await auth_service.refresh(result.tokens.refresh_token)

        claims = auth_service.codec.verify(new.refresh_token, TokenType.REFRESH)

        assert claims.jti == new.session_id
        assert auth_service.sessions.is_live(claims.jti)
        # The rotated refresh token must itself be usable
        newer = await auth_service.refresh(new.refresh_token)
        assert newer.token_family == result.tokens.token_family

    async def test_replayed_refresh_token_rejected(self, auth_service):
        result = await _register(auth_service)
        await auth_service.refresh(result.tokens.refresh_token)

        with pytest.raises(SessionNotFoundError):
            await auth_service.refresh(result.tokens.refresh_token)

    async def test_concurrent_refresh_has_exactly_one_winner(self, auth_service):
        result = await _register(auth_service)
        barrier = threading.Barrier(6)
        winners = []
        losers = []
        lock = threading.Lock()

        def _refresh():
            barrier.wait()
            try:
                pair = asyncio.run(auth_service.refresh(result.tokens.refresh_token))
            except SessionNotFoundError:
                with lock:
                    losers.append(1)
            else:
                with lock:
                    winners.append(pair)

        threads = [threading.Thread(target=_refresh) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 5
        assert auth_service.sessions.is_live(winners[0].session_id)
        assert winners[0].token_family == result.tokens.token_family

    async def test_old_access_token_dies_with_rotation(self, auth_service):
        result = await _register(auth_service)
        await auth_service.refresh(result.tokens.refresh_token)

        with pytest.raises(SessionRevokedError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        result = await _register(auth_service)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(result.tokens.access_token)

    async def test_expired_refresh_token_rejected(self, auth_service, clock):
        result = await _register(auth_service)
        clock.advance(days=7, seconds=1)

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(result.tokens.refresh_token)

    async def test_deactivated_user_cannot_refresh(self, auth_service, memory_store):
        result = await _register(auth_service)
        memory_store.set_user_active(result.user.id, False)

        with pytest.raises(AccountDeactivatedError):
            await auth_service.refresh(result.tokens.refresh_token)


class TestLogout:
    async def test_logout_with_refresh_token_revokes_only_that_session(self, auth_service):
        first = await _register(auth_service)
        second = await auth_service.login("alice@acme.com", PASSWORD)

        revoked = await auth_service.logout(first.user.id, first.tokens.refresh_token)

        assert revoked == 1
        assert not auth_service.sessions.is_live(first.tokens.session_id)
        assert auth_service.sessions.is_live(second.tokens.session_id)

    async def test_logout_without_token_revokes_everything(self, auth_service):
        first = await _register(auth_service)
        second = await auth_service.login("alice@acme.com", PASSWORD)

        revoked = await auth_service.logout(first.user.id)

        assert revoked == 2
        assert not auth_service.sessions.is_live(first.tokens.session_id)
        assert not auth_service.sessions.is_live(second.tokens.session_id)

    async def test_logout_ignores_garbage_token(self, auth_service):
        result = await _register(auth_service)

        assert await auth_service.logout(result.user.id, "not-a-token") == 0
        assert auth_service.sessions.is_live(result.tokens.session_id)

    async def test_logout_ignores_non_ascii_signature(self, auth_service):
        result = await _register(auth_service)
        header, payload, _ = result.tokens.refresh_token.split(".")
        tampered = f"{header}.{payload}.\u00e9\u00e9\u00e9"

        revoked = await auth_service.logout(result.user.id, tampered)

        assert revoked == 0
        assert auth_service.sessions.is_live(result.tokens.session_id)

    async def test_logout_ignores_foreign_refresh_token(self, auth_service):
        alice = await _register(auth_service)
        bob = await _register(auth_service, email="bob@globex.com", org="Globex")

        assert await auth_service.logout(alice.user.id, bob.tokens.refresh_token) == 0
        assert auth_service.sessions.is_live(bob.tokens.session_id)

    async def test_logout_is_audited(self, auth_service, memory_store):
        result = await _register(auth_service)
        await auth_service.logout(result.user.id, org_id=result.user.org_id)

        actions = {e.action for e in memory_store.list_audit_events(result.user.org_id)}
        assert AuditAction.LOGOUT in actions


class TestAuthenticate:
    async def test_bearer_header_parsed(self, auth_service):
        result = await _register(auth_service)

        ctx = await auth_service.authenticate(f"Bearer {result.tokens.access_token}")
        assert ctx.user_id == result.user.id

        ctx = await auth_service.authenticate(f"bearer   {result.tokens.access_token}")
        assert ctx.user_id == result.user.id

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    async def test_missing_bearer_rejected(self, auth_service, header):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(header)

    async def test_non_ascii_bearer_rejected_as_invalid_token(self, auth_service):
        result = await _register(auth_service)
        header, payload, _ = result.tokens.access_token.split(".")

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {header}.{payload}.\u00ff\u00ff")
        assert await auth_service.authenticate_optional("Bearer \u00e9") is None

    async def test_optional_authentication(self, auth_service):
        result = await _register(auth_service)

        assert await auth_service.authenticate_optional(None) is None
        assert await auth_service.authenticate_optional("Bearer junk") is None
        ctx = await auth_service.authenticate_optional(
            f"Bearer {result.tokens.access_token}"
        )
        assert ctx.user_id == result.user.id


class TestPasswordReset:
    async def test_unknown_email_returns_none(self, auth_service):
        assert await auth_service.forgot_password("ghost@acme.com") is None

    async def test_reset_changes_password_and_revokes_sessions(self, auth_service):
        result = await _register(auth_service)
        token = await auth_service.forgot_password("alice@acme.com")

        await auth_service.reset_password(token, "N3wPassword!")

        assert not auth_service.sessions.is_live(result.tokens.session_id)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@acme.com", PASSWORD)
        assert await auth_service.login("alice@acme.com", "N3wPassword!")

    async def test_reset_token_is_single_use(self, auth_service):
        await _register(auth_service)
        token = await auth_service.forgot_password("alice@acme.com")
        await auth_service.reset_password(token, "N3wPassword!")

        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, "Another1Pass!")

    async def test_reset_clears_lockout(self, auth_service, memory_store):
        result = await _register(auth_service)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@acme.com", "wrong-password")
        token = await auth_service.forgot_password("alice@acme.com")

        await auth_service.reset_password(token, "N3wPassword!")

        user = memory_store.get_user(result.user.id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
        assert await auth_service.login("alice@acme.com", "N3wPassword!")

    async def test_reset_token_expires_after_an_hour(self, auth_service, clock):
        await _register(auth_service)
        token = await auth_service.forgot_password("alice@acme.com")
        clock.advance(hours=1, seconds=1)

        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, "N3wPassword!")

    async def test_access_token_is_not_a_reset_token(self, auth_service):
        result = await _register(auth_service)
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(result.tokens.access_token, "N3wPassword!")


class TestEmailVerification:
    async def test_resend_and_verify(self, auth_service, memory_store):
        await _register(auth_service)
        bob = await _register(auth_service, email="bob@globex.com", org="Globex")

        token = await auth_service.resend_verification_email("bob@globex.com")
        assert token is not None

        assert await auth_service.verify_email(token) is True
        assert memory_store.get_user(bob.user.id).email_verified is True
        # Idempotent
        assert await auth_service.verify_email(token) is False

    async def test_resend_reveals_nothing(self, auth_service):
        await _register(auth_service)
        assert await auth_service.resend_verification_email("ghost@acme.com") is None
        # First user is already verified
        assert await auth_service.resend_verification_email("alice@acme.com") is None

    async def test_verification_token_expires(self, auth_service, clock):
        await _register(auth_service)
        await _register(auth_service, email="bob@globex.com", org="Globex")
        token = await auth_service.resend_verification_email("bob@globex.com")
        clock.advance(hours=24, seconds=1)

        with pytest.raises(InvalidTokenError):
            await auth_service.verify_email(token)


class TestProfile:
    async def test_current_user_profile(self, auth_service):
        result = await _register(auth_service)
        await auth_service.login("alice@acme.com", PASSWORD)

        profile = await auth_service.get_current_user(result.user.id)

        assert profile.email == "alice@acme.com"
        assert profile.organization_name == "Acme"
        assert profile.first_name == "Alice"
        assert profile.last_name == "Anders"
        assert profile.last_login_at is not None

    async def test_missing_user_profile(self, auth_service):
        assert await auth_service.get_current_user("missing") is None


class TestAuditIsBestEffort:
    async def test_audit_failure_does_not_block_login(self, auth_service, memory_store, monkeypatch):
        await _register(auth_service)

        def _boom(event):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(memory_store, "record_audit_event", _boom)

        result = await auth_service.login("alice@acme.com", PASSWORD)
        assert result.tokens.access_token

    async def test_audit_failure_does_not_block_registration(self, auth_service, memory_store, monkeypatch):
        def _boom(event):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(memory_store, "record_audit_event", _boom)

        result = await _register(auth_service)
        assert result.user.role == Role.ADMIN


def test_session_ttl_follows_settings(memory_store, clock):
    from crmcore.config import Settings
    from crmcore.service.auth import AuthService

    settings = Settings(jwt_secret="x" * 40, refresh_token_ttl_days=1)
    service = AuthService(memory_store, settings, clock=clock)
    assert service.sessions.session_ttl == timedelta(days=1)
