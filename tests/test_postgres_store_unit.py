"""PostgresStore unit tests against a stubbed connection pool."""

from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from identitykit.logging import get_logger
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _Cursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Answers each statement with the next queued result, recording the SQL."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return _Cursor(self.results.pop(0) if self.results else [])


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.logger = get_logger("test")
    return store


def test_latest_refresh_token_orders_by_id_desc():
    conn = FakeConnection(
        results=[[{"id": 7, "account_id": "acct", "token": "tok", "expires_at": NOW, "created_at": NOW}]]
    )
    store = _store(conn)

    record = store.latest_refresh_token("acct")

    assert record.id == 7 and record.token == "tok"
    sql, params = conn.statements[0]
    assert "ORDER BY id DESC LIMIT 1" in sql
    assert params == ("acct",)


def test_latest_password_reset_missing_returns_none():
    store = _store(FakeConnection(results=[[]]))

    assert store.latest_password_reset("acct") is None


def test_create_account_inserts_roles():
    conn = FakeConnection()
    store = _store(conn)

    account = store.create_account("a@x.com", "hash", "A", "B")

    assert account.roles == {"USER"}
    assert conn.statements[0][0].startswith("INSERT INTO account ")
    assert conn.statements[1] == (
        "INSERT INTO account_role (account_id, role) VALUES (%s, %s)",
        (account.id, "USER"),
    )


def test_unique_violation_becomes_constraint_violation():
    store = _store(FakeConnection(error=errors.UniqueViolation("duplicate key")))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("a@x.com", "hash", "A", "B")
    assert excinfo.value.detail == {"field": "email"}


def test_other_database_errors_become_storage_error():
    store = _store(FakeConnection(error=psycopg.OperationalError("server closed the connection")))

    with pytest.raises(StorageError):
        store.get_account("acct")


def test_get_account_loads_roles():
    conn = FakeConnection(
        results=[
            [
                {
                    "id": "acct",
                    "email": "a@x.com",
                    "password_hash": "hash",
                    "first_name": "A",
                    "last_name": "B",
                    "status": "ACTIVE",
                    "quota": "10GB",
                    "created_at": NOW,
                    "last_login": None,
                }
            ],
            [{"role": "USER"}, {"role": "ADMIN"}],
        ]
    )
    store = _store(conn)

    account = store.get_account("acct")

    assert account.roles == {"USER", "ADMIN"}
    assert account.email == "a@x.com"


def test_close_closes_pool():
    store = _store(FakeConnection())

    store.close()

    assert store.pool.closed
