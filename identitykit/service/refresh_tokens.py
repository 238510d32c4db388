from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from identitykit.logging import get_logger
from identitykit.service.errors import AuthErrorKind, Result
from identitykit.service.tokens import Clock, utc_clock
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


class RefreshTokenPort(Protocol):
    def add_refresh_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def latest_refresh_token(self, account_id: str) -> Optional[RefreshTokenRecord]: ...


class RefreshCheck(Enum):
    OK = "ok"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class RefreshTokenStore:
    """Keeps one live refresh token per account: the most recently persisted one."""

    def __init__(self, store: RefreshTokenPort, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utc_clock

    async def persist(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Result[RefreshTokenRecord]:
        try:
            record = await asyncio.to_thread(
                self.store.add_refresh_token, account_id, token, expires_at
            )
        except (ConstraintViolation, StorageError) as exc:
            logger.error(
                "refresh_token_persist_failed", account_id=account_id, error=str(exc)
            )
            return Result.failure(AuthErrorKind.UNABLE_TO_PERSIST)
        return Result.success(record)

    async def validate(self, account_id: str, presented: str) -> RefreshCheck:
        record = await asyncio.to_thread(self.store.latest_refresh_token, account_id)
        if record is None:
            return RefreshCheck.NOT_FOUND
        # Exact match against the latest record; older records never count
        if record.token != presented:
            logger.warning("refresh_token_mismatch", account_id=account_id)
            return RefreshCheck.MISMATCH
        if record.expires_at <= self._clock():
            logger.info("refresh_token_record_expired", account_id=account_id)
            return RefreshCheck.EXPIRED
        return RefreshCheck.OK
