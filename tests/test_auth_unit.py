"""Unit tests for the auth service.

Tests for:
- Registration and duplicate handling
- Login with attempt auditing
- Refresh token rotation and expiry
- Current account lookup
- Password reset end to end
"""

from pathlib import Path

import pytest

from conftest import RecordingMailer
from identitykit.service.auth import AuthService, TokenPair
from identitykit.service.errors import AuthErrorKind
from identitykit.service.tokens import ACCESS, TokenCodec
from identitykit.storage.errors import StorageError
from identitykit.storage.models import AccountStatus

PASSWORD = "Abc12345!"


@pytest.fixture
def auth_service(memory_store, auth_config, clock, mailer):
    return AuthService(memory_store, auth_config, mailer=mailer, clock=clock)


async def _register(auth_service, email="a@x.com", password=PASSWORD):
    result = await auth_service.register(email, password, "A", "B")
    assert result.ok, result.message
    return result.value


class TestRegister:
    async def test_register_creates_active_user(self, auth_service, memory_store):
        account = await _register(auth_service)

        assert account.email == "a@x.com"
        assert account.roles == {"USER"}
        assert account.status is AccountStatus.ACTIVE
        assert account.quota == "10GB"
        stored = memory_store.get_account(account.id)
        assert stored.password_hash != PASSWORD
        assert auth_service.hasher.verify(PASSWORD, stored.password_hash)

    async def test_email_is_normalized(self, auth_service):
        account = await _register(auth_service, email="  Mixed.Case@X.com ")

        assert account.email == "mixed.case@x.com"

    async def test_duplicate_registration_keeps_one_account(self, auth_service, memory_store):
        await _register(auth_service)

        result = await auth_service.register("A@x.com", PASSWORD, "C", "D")

        assert result.error is AuthErrorKind.ACCOUNT_ALREADY_EXISTS
        assert len(memory_store.accounts) == 1

    async def test_storage_failure_is_registration_failed(self, auth_service, memory_store, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("down")

        monkeypatch.setattr(memory_store, "create_account", broken)

        result = await auth_service.register("a@x.com", PASSWORD, "A", "B")

        assert result.error is AuthErrorKind.REGISTRATION_FAILED


class TestLogin:
    async def test_correct_login_returns_pair_and_audits_success(self, auth_service, memory_store, auth_config):
        account = await _register(auth_service)

        result = await auth_service.login("a@x.com", PASSWORD)

        assert result.ok
        pair = result.value
        assert isinstance(pair, TokenPair)
        assert pair.expires_in == auth_config.access_token_ttl_seconds
        attempts = memory_store.list_login_attempts(account.id)
        assert [a.success for a in attempts] == [True]
        assert memory_store.latest_refresh_token(account.id).token == pair.refresh_token
        assert memory_store.get_account(account.id).last_login is not None

    async def test_wrong_password_audits_failure_and_issues_nothing(self, auth_service, memory_store):
        account = await _register(auth_service)

        result = await auth_service.login("a@x.com", "wrong")

        assert result.error is AuthErrorKind.INVALID_CREDENTIALS
        assert result.value is None
        assert [a.success for a in memory_store.list_login_attempts(account.id)] == [False]
        assert memory_store.latest_refresh_token(account.id) is None

    async def test_unknown_email(self, auth_service, memory_store):
        result = await auth_service.login("nobody@x.com", PASSWORD)

        assert result.error is AuthErrorKind.ACCOUNT_DOES_NOT_EXIST
        assert memory_store.login_attempts == []

    async def test_login_email_is_case_insensitive(self, auth_service):
        await _register(auth_service)

        result = await auth_service.login("A@X.COM", PASSWORD)

        assert result.ok

    async def test_audit_failure_does_not_block_login(self, auth_service, memory_store, monkeypatch):
        await _register(auth_service)

        def broken(*args, **kwargs):
            raise StorageError("audit table locked")

        monkeypatch.setattr(memory_store, "add_login_attempt", broken)

        result = await auth_service.login("a@x.com", PASSWORD)

        assert result.ok

    async def test_refresh_persist_failure_returns_no_tokens(self, auth_service, memory_store, monkeypatch):
        await _register(auth_service)

        def broken(*args, **kwargs):
            raise StorageError("down")

        monkeypatch.setattr(memory_store, "add_refresh_token", broken)

        result = await auth_service.login("a@x.com", PASSWORD)

        assert result.error is AuthErrorKind.UNABLE_TO_PERSIST
        assert result.value is None

    async def test_access_token_authenticates(self, auth_service):
        account = await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        result = await auth_service.authenticate_access_token(pair.access_token)

        assert result.value == account.id

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        result = await auth_service.authenticate_access_token(pair.refresh_token)

        assert result.error is AuthErrorKind.INVALID_ACCESS_TOKEN


class TestRefresh:
    async def test_refresh_rotates_pair(self, auth_service, memory_store):
        account = await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        result = await auth_service.refresh(pair.refresh_token)

        assert result.ok
        assert result.value.refresh_token != pair.refresh_token
        assert memory_store.latest_refresh_token(account.id).token == result.value.refresh_token

    async def test_superseded_token_is_invalid(self, auth_service):
        await _register(auth_service)
        old = (await auth_service.login("a@x.com", PASSWORD)).value
        await auth_service.refresh(old.refresh_token)

        result = await auth_service.refresh(old.refresh_token)

        assert result.error is AuthErrorKind.INVALID_REFRESH_TOKEN

    async def test_second_login_supersedes_first(self, auth_service):
        await _register(auth_service)
        first = (await auth_service.login("a@x.com", PASSWORD)).value
        await auth_service.login("a@x.com", PASSWORD)

        result = await auth_service.refresh(first.refresh_token)

        assert result.error is AuthErrorKind.INVALID_REFRESH_TOKEN

    async def test_refresh_valid_until_ttl_then_expired(self, auth_service, auth_config, clock):
        await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        clock.advance(auth_config.refresh_token_ttl_seconds - 1)
        renewed = await auth_service.refresh(pair.refresh_token)
        assert renewed.ok

        clock.advance(auth_config.refresh_token_ttl_seconds + 1)
        result = await auth_service.refresh(renewed.value.refresh_token)
        assert result.error is AuthErrorKind.REFRESH_TOKEN_EXPIRED

    async def test_garbage_token_is_invalid(self, auth_service):
        result = await auth_service.refresh("not.a.token")

        assert result.error is AuthErrorKind.INVALID_REFRESH_TOKEN

    async def test_access_token_cannot_refresh(self, auth_service):
        await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        result = await auth_service.refresh(pair.access_token)

        assert result.error is AuthErrorKind.INVALID_REFRESH_TOKEN

    async def test_signed_token_without_record_is_invalid(self, auth_service, auth_config, clock):
        account = await _register(auth_service)
        codec = TokenCodec(auth_config, clock=clock)
        token = codec.issue_refresh(account.id, {"USER"}, 600)

        result = await auth_service.refresh(token)

        assert result.error is AuthErrorKind.INVALID_REFRESH_TOKEN


class TestCurrentUser:
    async def test_fetch_current_user_returns_view(self, auth_service):
        account = await _register(auth_service)

        result = await auth_service.fetch_current_user(account.id)

        view = result.value
        assert view.email == "a@x.com"
        assert view.roles == ["USER"]
        assert not hasattr(view, "password_hash")

    async def test_unknown_account(self, auth_service):
        result = await auth_service.fetch_current_user("missing")

        assert result.error is AuthErrorKind.ACCOUNT_DOES_NOT_EXIST

    async def test_access_token_subject_resolves(self, auth_service):
        await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value
        account_id = (await auth_service.authenticate_access_token(pair.access_token)).value

        result = await auth_service.fetch_current_user(account_id)

        assert result.value.email == "a@x.com"
        assert auth_service.codec.parse_subject(pair.access_token, ACCESS) == account_id


class TestPasswordReset:
    async def test_reset_changes_password(self, auth_service, memory_store, mailer):
        account = await _register(auth_service)
        old_hash = memory_store.get_account(account.id).password_hash
        assert (await auth_service.forgot_password("a@x.com")).ok
        token = mailer.sent[-1][1]

        result = await auth_service.reset_password(token, "N3w!Passw")

        assert result.ok
        assert memory_store.get_account(account.id).password_hash != old_hash
        assert (await auth_service.login("a@x.com", "N3w!Passw")).ok
        old_login = await auth_service.login("a@x.com", PASSWORD)
        assert old_login.error is AuthErrorKind.INVALID_CREDENTIALS

    async def test_superseded_reset_token_is_rejected(self, auth_service, mailer):
        await _register(auth_service)
        await auth_service.forgot_password("a@x.com")
        old_token = mailer.sent[-1][1]
        await auth_service.forgot_password("a@x.com")

        result = await auth_service.reset_password(old_token, "N3w!Passw")

        assert result.error is AuthErrorKind.INVALID_PASSWORD_RESET_URL

    async def test_expired_reset_token_is_rejected(self, auth_service, auth_config, mailer, clock):
        await _register(auth_service)
        await auth_service.forgot_password("a@x.com")
        token = mailer.sent[-1][1]
        clock.advance(auth_config.password_reset_ttl_seconds + 1)

        result = await auth_service.reset_password(token, "N3w!Passw")

        assert result.error is AuthErrorKind.INVALID_PASSWORD_RESET_URL

    async def test_access_token_is_not_a_reset_token(self, auth_service):
        await _register(auth_service)
        pair = (await auth_service.login("a@x.com", PASSWORD)).value

        result = await auth_service.reset_password(pair.access_token, "N3w!Passw")

        assert result.error is AuthErrorKind.INVALID_PASSWORD_RESET_URL

    async def test_forgot_password_unknown_email(self, auth_service, mailer):
        result = await auth_service.forgot_password("nobody@x.com")

        assert result.error is AuthErrorKind.ACCOUNT_DOES_NOT_EXIST
        assert mailer.sent == []

    async def test_forgot_password_mail_failure(self, memory_store, auth_config, clock):
        service = AuthService(
            memory_store, auth_config, mailer=RecordingMailer(result=False), clock=clock
        )
        await _register(service)

        result = await service.forgot_password("a@x.com")

        assert result.error is AuthErrorKind.EMAIL_DELIVERY_FAILED


async def test_unexpected_error_becomes_unknown(auth_service, memory_store, monkeypatch):
    def explode(*args, **kwargs):
        raise KeyError("internal detail")

    monkeypatch.setattr(memory_store, "get_account", explode)

    result = await auth_service.fetch_current_user("any")

    assert result.error is AuthErrorKind.UNKNOWN_ERROR
    assert "internal detail" not in result.message


class TestFailedWritesLeaveNoTrace:
    @staticmethod
    def _refuse_write(self, *args, **kwargs):
        raise OSError("disk full")

    async def test_failed_registration_can_be_retried(self, auth_service, memory_store):
        with pytest.MonkeyPatch.context() as patch:
            patch.setattr(Path, "write_text", self._refuse_write)
            first = await auth_service.register("a@x.com", PASSWORD, "A", "B")

        assert first.error is AuthErrorKind.REGISTRATION_FAILED
        assert memory_store.get_account_by_email("a@x.com") is None
        assert (await auth_service.register("a@x.com", PASSWORD, "A", "B")).ok

    async def test_failed_reset_keeps_old_password(self, auth_service, mailer):
        await _register(auth_service)
        await auth_service.forgot_password("a@x.com")
        token = mailer.sent[-1][1]

        with pytest.MonkeyPatch.context() as patch:
            patch.setattr(Path, "write_text", self._refuse_write)
            result = await auth_service.reset_password(token, "N3w!Passw")

        assert result.error is AuthErrorKind.INVALID_PASSWORD_RESET_URL
        assert (await auth_service.login("a@x.com", PASSWORD)).ok
        new_login = await auth_service.login("a@x.com", "N3w!Passw")
        assert new_login.error is AuthErrorKind.INVALID_CREDENTIALS

    async def test_failed_login_keeps_current_refresh_token(self, auth_service, memory_store):
        account = await _register(auth_service)
        current = (await auth_service.login("a@x.com", PASSWORD)).value

        with pytest.MonkeyPatch.context() as patch:
            patch.setattr(Path, "write_text", self._refuse_write)
            failed = await auth_service.login("a@x.com", PASSWORD)

        assert failed.error is AuthErrorKind.UNABLE_TO_PERSIST
        assert memory_store.latest_refresh_token(account.id).token == current.refresh_token
        assert (await auth_service.refresh(current.refresh_token)).ok
