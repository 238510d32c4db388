from identitykit.service.errors import AuthErrorKind
from identitykit.service.login_attempts import LoginAttemptRecorder
from identitykit.storage.errors import StorageError


class _BrokenStore:
    def add_login_attempt(self, account_id, success, attempted_at=None):
        raise StorageError("connection lost")


async def test_record_appends_one_row(memory_store, clock):
    account = memory_store.create_account("a@x.com", "hash", "A", "B")
    recorder = LoginAttemptRecorder(memory_store, clock=clock)

    ok = await recorder.record(account.id, True)
    failed = await recorder.record(account.id, False)

    attempts = memory_store.list_login_attempts(account.id)
    assert [a.success for a in attempts] == [True, False]
    assert ok.value.attempted_at == clock()
    assert failed.value.id == ok.value.id + 1


async def test_storage_failure_is_reported(clock):
    recorder = LoginAttemptRecorder(_BrokenStore(), clock=clock)

    result = await recorder.record("acct", True)

    assert result.error is AuthErrorKind.UNABLE_TO_PERSIST
