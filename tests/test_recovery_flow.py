"""Tests for account recovery and forgotten-password flows."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agora.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from agora.storage.models import CodeType

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock(auth_service, monkeypatch):
    clock = Clock(T0)
    monkeypatch.setattr(auth_service, "_now", clock)
    return clock


@pytest.fixture
def user(auth_service):
    return asyncio.run(auth_service.register("carol@example.com", "OldHorse1!", "Carol"))


def _sent_code(email_outbox):
    _, code = email_outbox.last("reset_password_account")
    return code


class TestRecoveryAccount:
    """Tests for issuing recovery codes."""

    async def test_recovery_issues_numeric_code(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")

        code = _sent_code(email_outbox)
        assert len(code) == 6 and code.isdigit()
        row = memory_store.get_code(user.id, CodeType.RECOVERY)
        assert row.tokens == [code]
        assert row.expires_at == T0 + timedelta(minutes=5)
        assert row.created_at == T0

    async def test_recovery_unknown_email(self, auth_service, clock):
        with pytest.raises(NotFoundError):
            await auth_service.recovery_account("nobody@example.com")

    async def test_reissue_overwrites_single_row(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")
        clock.advance(minutes=2)
        await auth_service.recovery_account("carol@example.com")

        recovery_rows = [key for key in memory_store.codes if key == (user.id, CodeType.RECOVERY)]
        assert len(recovery_rows) == 1
        row = memory_store.get_code(user.id, CodeType.RECOVERY)
        assert row.tokens == [_sent_code(email_outbox)]
        assert row.created_at == T0 + timedelta(minutes=2)


class TestConfirmRecovery:
    """Tests for confirming a recovery code."""

    async def test_immediate_confirm_changes_password(self, auth_service, memory_store, email_outbox, clock, user):
        before = memory_store.get_user(user.id).hashed_password
        await auth_service.recovery_account("carol@example.com")
        clock.advance(seconds=5)

        await auth_service.confirm_recovery_account(
            "carol@example.com", _sent_code(email_outbox), "NewHorse2!"
        )

        after = memory_store.get_user(user.id).hashed_password
        assert after != before
        assert auth_service.hashing.verify(after, "NewHorse2!")
        assert email_outbox.last("notification_reset_password") == ("carol@example.com",)

    async def test_second_confirm_within_a_minute_conflicts(self, auth_service, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")
        code = _sent_code(email_outbox)
        await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse2!")
        clock.advance(seconds=30)

        with pytest.raises(ConflictError) as excinfo:
            await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse3!")

        assert excinfo.value.detail == {"retry_after_seconds": 30}

    async def test_rate_limit_is_checked_before_expiry(self, auth_service, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")
        code = _sent_code(email_outbox)
        clock.advance(minutes=4, seconds=50)
        await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse2!")
        clock.advance(seconds=20)

        with pytest.raises(ConflictError):
            await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse3!")

    async def test_confirm_after_cool_down_is_allowed(self, auth_service, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")
        code = _sent_code(email_outbox)
        await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse2!")
        clock.advance(seconds=61)

        await auth_service.confirm_recovery_account("carol@example.com", code, "NewHorse3!")

    async def test_expired_code_is_unauthorized(self, auth_service, memory_store, email_outbox, clock, user):
        before = memory_store.get_user(user.id).hashed_password
        await auth_service.recovery_account("carol@example.com")
        clock.advance(minutes=5, seconds=1)

        with pytest.raises(AuthenticationError):
            await auth_service.confirm_recovery_account(
                "carol@example.com", _sent_code(email_outbox), "NewHorse2!"
            )

        assert memory_store.get_user(user.id).hashed_password == before

    async def test_wrong_code_is_unauthorized(self, auth_service, email_outbox, clock, user):
        await auth_service.recovery_account("carol@example.com")
        wrong = "000000" if _sent_code(email_outbox) != "000000" else "111111"

        with pytest.raises(AuthenticationError):
            await auth_service.confirm_recovery_account("carol@example.com", wrong, "NewHorse2!")

    async def test_code_of_another_account_is_unauthorized(self, auth_service, email_outbox, clock, user):
        await auth_service.register("dave@example.com", "DaveHorse1!", "Dave")
        await auth_service.recovery_account("carol@example.com")

        with pytest.raises(AuthenticationError):
            await auth_service.confirm_recovery_account(
                "dave@example.com", _sent_code(email_outbox), "NewHorse2!"
            )

    async def test_confirm_deletes_verification_code_only(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")
        await auth_service.recovery_account("carol@example.com")

        await auth_service.confirm_recovery_account(
            "carol@example.com", _sent_code(email_outbox), "NewHorse2!"
        )

        assert memory_store.get_code(user.id, CodeType.VERIFICATION) is None
        assert memory_store.get_code(user.id, CodeType.RECOVERY) is not None

    async def test_failed_transaction_leaves_password_untouched(
        self, auth_service, memory_store, email_outbox, clock, user, monkeypatch
    ):
        before = memory_store.get_user(user.id).hashed_password
        await auth_service.forgot_password("carol@example.com")
        await auth_service.recovery_account("carol@example.com")

        def broken_delete(user_id, code_type):
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "delete_code", broken_delete)

        with pytest.raises(RuntimeError):
            await auth_service.confirm_recovery_account(
                "carol@example.com", _sent_code(email_outbox), "NewHorse2!"
            )

        assert memory_store.get_user(user.id).hashed_password == before
        assert memory_store.get_code(user.id, CodeType.VERIFICATION) is not None


class TestForgotPassword:
    """Tests for the forgotten-password flow."""

    async def test_forgot_password_issues_verification_code(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")

        row = memory_store.get_code(user.id, CodeType.VERIFICATION)
        assert row.tokens == [_sent_code(email_outbox)]
        assert memory_store.get_code(user.id, CodeType.RECOVERY) is None

    async def test_forgot_password_unknown_email(self, auth_service, clock):
        with pytest.raises(NotFoundError):
            await auth_service.forgot_password("nobody@example.com")

    async def test_verify_resets_password_and_consumes_code(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")

        await auth_service.verify_token_forgot_password(
            user.id, _sent_code(email_outbox), "NewHorse2!", "notify@example.com"
        )

        assert auth_service.hashing.verify(memory_store.get_user(user.id).hashed_password, "NewHorse2!")
        assert memory_store.get_code(user.id, CodeType.VERIFICATION) is None
        assert email_outbox.last("notification_reset_password") == ("notify@example.com",)

    async def test_verify_without_code_is_not_found(self, auth_service, clock, user):
        with pytest.raises(NotFoundError):
            await auth_service.verify_token_forgot_password(
                user.id, "123456", "NewHorse2!", "carol@example.com"
            )

    async def test_verify_expired_code_is_not_found(self, auth_service, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")
        clock.advance(minutes=6)

        with pytest.raises(NotFoundError):
            await auth_service.verify_token_forgot_password(
                user.id, _sent_code(email_outbox), "NewHorse2!", "carol@example.com"
            )

    async def test_verify_wrong_token_is_forbidden(self, auth_service, memory_store, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")
        wrong = "000000" if _sent_code(email_outbox) != "000000" else "111111"

        with pytest.raises(ForbiddenError):
            await auth_service.verify_token_forgot_password(
                user.id, wrong, "NewHorse2!", "carol@example.com"
            )

        assert memory_store.get_code(user.id, CodeType.VERIFICATION) is not None

    async def test_code_is_single_use(self, auth_service, email_outbox, clock, user):
        await auth_service.forgot_password("carol@example.com")
        code = _sent_code(email_outbox)
        await auth_service.verify_token_forgot_password(user.id, code, "NewHorse2!", "carol@example.com")

        with pytest.raises(NotFoundError):
            await auth_service.verify_token_forgot_password(user.id, code, "NewHorse3!", "carol@example.com")
