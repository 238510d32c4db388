from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from identitykit.logging import get_logger
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import (
    Account,
    AccountStatus,
    LoginAttemptRecord,
    PasswordResetRecord,
    RefreshTokenRecord,
    utcnow,
)


class MemoryStore:
    """In-memory identity store with JSON snapshots under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/identitykit") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: List[RefreshTokenRecord] = []
        self.password_resets: List[PasswordResetRecord] = []
        self.login_attempts: List[LoginAttemptRecord] = []
        self._refresh_seq: int = 1
        self._reset_seq: int = 1
        self._attempt_seq: int = 1
        # RLock so helpers may re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(
                email, password_hash, first_name, last_name, roles=roles, quota=quota
            )
            self.accounts[account.id] = account
            self._persist_or_undo(lambda: self.accounts.pop(account.id, None))
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email == email), None
            )

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._set_account_field(account_id, "password_hash", password_hash)

    def record_login(
        self, account_id: str, when: Optional[datetime] = None
    ) -> Optional[Account]:
        return self._set_account_field(account_id, "last_login", when or utcnow())

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        return self._set_account_field(account_id, "status", AccountStatus(status))

    def add_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            return self._set_account_field(account_id, "roles", account.roles | {role})

    def _set_account_field(
        self, account_id: str, field: str, value: Any
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            previous = getattr(account, field)
            setattr(account, field, value)
            self._persist_or_undo(lambda: setattr(account, field, previous))
            return account

    # refresh tokens
    def add_refresh_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found", {"field": "account_id"}
                )
            record = RefreshTokenRecord(
                id=self._refresh_seq,
                account_id=account_id,
                token=token,
                expires_at=expires_at,
            )
            self._refresh_seq += 1
            self.refresh_tokens.append(record)
            self._persist_or_undo(lambda: self._drop_last(self.refresh_tokens, "_refresh_seq"))
            return record

    def latest_refresh_token(self, account_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            matches = [r for r in self.refresh_tokens if r.account_id == account_id]
            return max(matches, key=lambda r: r.id, default=None)

    # password resets
    def add_password_reset(
        self, account_id: str, token: str, expires_at: datetime
    ) -> PasswordResetRecord:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found", {"field": "account_id"}
                )
            record = PasswordResetRecord(
                id=self._reset_seq,
                account_id=account_id,
                token=token,
                expires_at=expires_at,
            )
            self._reset_seq += 1
            self.password_resets.append(record)
            self._persist_or_undo(lambda: self._drop_last(self.password_resets, "_reset_seq"))
            return record

    def latest_password_reset(self, account_id: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            matches = [r for r in self.password_resets if r.account_id == account_id]
            return max(matches, key=lambda r: r.id, default=None)

    # login audit
    def add_login_attempt(
        self,
        account_id: str,
        success: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttemptRecord:
        with self._data_lock:
            record = LoginAttemptRecord(
                id=self._attempt_seq,
                account_id=account_id,
                success=success,
                attempted_at=attempted_at or utcnow(),
            )
            self._attempt_seq += 1
            self.login_attempts.append(record)
            self._persist_or_undo(lambda: self._drop_last(self.login_attempts, "_attempt_seq"))
            return record

    def list_login_attempts(self, account_id: str) -> List[LoginAttemptRecord]:
        with self._data_lock:
            return [a for a in self.login_attempts if a.account_id == account_id]

    # persistence
    def _persist_or_undo(self, undo: Callable[[], Any]) -> None:
        """Write the snapshot; on failure revert the pending change and re-raise."""
        try:
            self._persist_state()
        except StorageError:
            undo()
            raise

    def _drop_last(self, records: list, seq_attr: str) -> None:
        records.pop()
        setattr(self, seq_attr, getattr(self, seq_attr) - 1)

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "refresh_tokens": [
                self._serialize_token_record(r) for r in self.refresh_tokens
            ],
            "password_resets": [
                self._serialize_token_record(r) for r in self.password_resets
            ],
            "login_attempts": [
                {
                    "id": a.id,
                    "account_id": a.account_id,
                    "success": a.success,
                    "attempted_at": self._serialize_datetime(a.attempted_at),
                }
                for a in self.login_attempts
            ],
        }
        path = self._state_path()
        try:
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load in-memory state: {exc}") from exc
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.refresh_tokens = [
            RefreshTokenRecord(**self._deserialize_token_fields(r))
            for r in data.get("refresh_tokens", [])
        ]
        self.password_resets = [
            PasswordResetRecord(**self._deserialize_token_fields(r))
            for r in data.get("password_resets", [])
        ]
        self.login_attempts = [
            LoginAttemptRecord(
                id=a["id"],
                account_id=a["account_id"],
                success=a["success"],
                attempted_at=self._deserialize_datetime(a["attempted_at"]),
            )
            for a in data.get("login_attempts", [])
        ]
        self._refresh_seq = max((r.id for r in self.refresh_tokens), default=0) + 1
        self._reset_seq = max((r.id for r in self.password_resets), default=0) + 1
        self._attempt_seq = max((a.id for a in self.login_attempts), default=0) + 1
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "status": account.status.value,
            "roles": sorted(account.roles),
            "quota": account.quota,
            "created_at": self._serialize_datetime(account.created_at),
            "last_login": self._serialize_datetime(account.last_login),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            roles=set(data.get("roles") or []),
            quota=data.get("quota", "10GB"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login=self._deserialize_datetime(data.get("last_login")),
        )

    def _serialize_token_record(self, record) -> dict:
        return {
            "id": record.id,
            "account_id": record.account_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_token_fields(self, data: dict) -> dict:
        return {
            "id": data["id"],
            "account_id": data["account_id"],
            "token": data["token"],
            "expires_at": self._deserialize_datetime(data["expires_at"]),
            "created_at": self._deserialize_datetime(data.get("created_at")) or utcnow(),
        }
