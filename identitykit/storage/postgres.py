from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Set

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identitykit.logging import get_logger
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import (
    DEFAULT_ROLE,
    Account,
    AccountStatus,
    LoginAttemptRecord,
    PasswordResetRecord,
    RefreshTokenRecord,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        quota TEXT NOT NULL DEFAULT '10GB',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_role (
        account_id UUID NOT NULL REFERENCES account(id),
        role TEXT NOT NULL,
        PRIMARY KEY (account_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id),
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset (
        id BIGSERIAL PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id),
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id BIGSERIAL PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id),
        success BOOLEAN NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id, id DESC)",
    "CREATE INDEX IF NOT EXISTS password_reset_account_idx ON password_reset (account_id, id DESC)",
)


class PostgresStore:
    """Postgres-backed identity store; every public call runs in one pooled transaction."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self) -> Iterator[psycopg.Connection]:
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("unique constraint violated", {"detail": str(exc)}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row does not exist", {"detail": str(exc)}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_store_error", error=str(exc))
            raise StorageError("database operation failed") from exc

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._transaction() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        roles: Optional[Set[str]] = None,
        quota: str = "10GB",
    ) -> Account:
        account_id = str(uuid.uuid4())
        role_set = set(roles) if roles else {DEFAULT_ROLE}
        created_at = utcnow()
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, first_name, last_name, status, quota, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        email,
                        password_hash,
                        first_name,
                        last_name,
                        AccountStatus.ACTIVE.value,
                        quota,
                        created_at,
                    ),
                )
                for role in sorted(role_set):
                    conn.execute(
                        "INSERT INTO account_role (account_id, role) VALUES (%s, %s)",
                        (account_id, role),
                    )
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return Account(
            id=account_id,
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            status=AccountStatus.ACTIVE,
            roles=role_set,
            quota=quota,
            created_at=created_at,
        )

    def _load_account(self, conn, row) -> Account:
        role_rows = conn.execute(
            "SELECT role FROM account_role WHERE account_id = %s",
            (row["id"],),
        ).fetchall()
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            roles={r["role"] for r in role_rows},
            quota=row.get("quota") or "10GB",
            created_at=row.get("created_at") or utcnow(),
            last_login=row.get("last_login"),
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
            if not row:
                return None
            return self._load_account(conn, row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
            if not row:
                return None
            return self._load_account(conn, row)

    def _update_account(self, account_id: str, column: str, value) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute(
                f"UPDATE account SET {column} = %s WHERE id = %s RETURNING *",
                (value, account_id),
            ).fetchone()
            if not row:
                return None
            return self._load_account(conn, row)

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._update_account(account_id, "password_hash", password_hash)

    def record_login(
        self, account_id: str, when: Optional[datetime] = None
    ) -> Optional[Account]:
        return self._update_account(account_id, "last_login", when or utcnow())

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        return self._update_account(account_id, "status", AccountStatus(status).value)

    def add_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO account_role (account_id, role) VALUES (%s, %s)
                ON CONFLICT (account_id, role) DO NOTHING
                """,
                (account_id, role),
            )
            return self._load_account(conn, row)

    # refresh tokens
    def add_refresh_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_token (account_id, token, expires_at)
                VALUES (%s, %s, %s)
                RETURNING id, account_id, token, expires_at, created_at
                """,
                (account_id, token, expires_at),
            ).fetchone()
        return RefreshTokenRecord(
            id=row["id"],
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def latest_refresh_token(self, account_id: str) -> Optional[RefreshTokenRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id, account_id, token, expires_at, created_at FROM refresh_token
                WHERE account_id = %s ORDER BY id DESC LIMIT 1
                """,
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            id=row["id"],
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    # password resets
    def add_password_reset(
        self, account_id: str, token: str, expires_at: datetime
    ) -> PasswordResetRecord:
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset (account_id, token, expires_at)
                VALUES (%s, %s, %s)
                RETURNING id, account_id, token, expires_at, created_at
                """,
                (account_id, token, expires_at),
            ).fetchone()
        return PasswordResetRecord(
            id=row["id"],
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def latest_password_reset(self, account_id: str) -> Optional[PasswordResetRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id, account_id, token, expires_at, created_at FROM password_reset
                WHERE account_id = %s ORDER BY id DESC LIMIT 1
                """,
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordResetRecord(
            id=row["id"],
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    # login audit
    def add_login_attempt(
        self,
        account_id: str,
        success: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttemptRecord:
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO login_attempt (account_id, success, attempted_at)
                VALUES (%s, %s, %s)
                RETURNING id, account_id, success, attempted_at
                """,
                (account_id, success, attempted_at or utcnow()),
            ).fetchone()
        return LoginAttemptRecord(
            id=row["id"],
            account_id=str(row["account_id"]),
            success=row["success"],
            attempted_at=row["attempted_at"],
        )

    def list_login_attempts(self, account_id: str) -> List[LoginAttemptRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, success, attempted_at FROM login_attempt
                WHERE account_id = %s ORDER BY id
                """,
                (account_id,),
            ).fetchall()
        return [
            LoginAttemptRecord(
                id=row["id"],
                account_id=str(row["account_id"]),
                success=row["success"],
                attempted_at=row["attempted_at"],
            )
            for row in rows
        ]
