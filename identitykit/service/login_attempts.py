from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Protocol

from identitykit.logging import get_logger
from identitykit.service.errors import AuthErrorKind, Result
from identitykit.service.tokens import Clock, utc_clock
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import LoginAttemptRecord

logger = get_logger(__name__)


class LoginAttemptPort(Protocol):
    def add_login_attempt(
        self,
        account_id: str,
        success: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttemptRecord: ...


class LoginAttemptRecorder:
    """Append-only audit of login attempts. Records, never throttles."""

    def __init__(self, store: LoginAttemptPort, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or utc_clock

    async def record(self, account_id: str, success: bool) -> Result[LoginAttemptRecord]:
        try:
            attempt = await asyncio.to_thread(
                self.store.add_login_attempt, account_id, success, self._clock()
            )
        except (ConstraintViolation, StorageError) as exc:
            logger.error(
                "login_attempt_persist_failed",
                account_id=account_id,
                success=success,
                error=str(exc),
            )
            return Result.failure(AuthErrorKind.UNABLE_TO_PERSIST)
        return Result.success(attempt)
