from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

from identitykit.config import AuthConfig
from identitykit.logging import get_logger
from identitykit.service.errors import AuthErrorKind, Result
from identitykit.service.tokens import Clock, TokenCodec, utc_clock
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import Account, PasswordResetRecord

logger = get_logger(__name__)

UpdatePassword = Callable[[str, str], Awaitable[Result[None]]]


class PasswordResetPort(Protocol):
    def add_password_reset(
        self, account_id: str, token: str, expires_at: datetime
    ) -> PasswordResetRecord: ...

    def latest_password_reset(self, account_id: str) -> Optional[PasswordResetRecord]: ...


class ResetMailer(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...


class PasswordResetFlow:
    """Issues reset tokens, mails them, and applies a new password on a valid token.

    Only the most recent reset record per account is honoured. A token is not
    marked used after a successful reset, so it stays valid until it expires
    or a newer reset is requested.
    """

    def __init__(
        self,
        store: PasswordResetPort,
        codec: TokenCodec,
        mailer: ResetMailer,
        config: AuthConfig,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.mailer = mailer
        self.config = config
        self._clock = clock or utc_clock

    async def request_reset(self, account: Account) -> Result[None]:
        ttl = self.config.password_reset_ttl_seconds
        token = self.codec.issue_reset(account.id, ttl)
        expires_at = self._clock() + timedelta(seconds=ttl)
        try:
            await asyncio.to_thread(
                self.store.add_password_reset, account.id, token, expires_at
            )
        except (ConstraintViolation, StorageError) as exc:
            logger.error(
                "password_reset_persist_failed", account_id=account.id, error=str(exc)
            )
            return Result.failure(AuthErrorKind.UNABLE_TO_PERSIST)

        try:
            delivered = await asyncio.to_thread(
                self.mailer.send_password_reset, account.email, token
            )
        except Exception as exc:
            logger.error(
                "password_reset_email_failed",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Result.failure(AuthErrorKind.EMAIL_DELIVERY_FAILED)
        if not delivered:
            logger.error("password_reset_email_failed", account_id=account.id)
            return Result.failure(AuthErrorKind.EMAIL_DELIVERY_FAILED)

        logger.info("password_reset_requested", account_id=account.id)
        return Result.success(None)

    async def validate_and_consume(
        self,
        account_id: str,
        presented: str,
        new_password: str,
        update_fn: UpdatePassword,
    ) -> Result[None]:
        invalid = Result.failure(AuthErrorKind.INVALID_PASSWORD_RESET_URL)
        record = await asyncio.to_thread(self.store.latest_password_reset, account_id)
        if record is None:
            logger.warning("password_reset_record_missing", account_id=account_id)
            return invalid
        if record.token != presented:
            logger.warning("password_reset_token_mismatch", account_id=account_id)
            return invalid
        if record.expires_at <= self._clock():
            logger.info("password_reset_record_expired", account_id=account_id)
            return invalid

        try:
            outcome = await update_fn(account_id, new_password)
        except Exception as exc:
            logger.error(
                "password_reset_update_failed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return invalid
        if not outcome.ok:
            logger.warning(
                "password_reset_update_rejected",
                account_id=account_id,
                reason=outcome.error.name if outcome.error else None,
            )
            return invalid

        logger.info("password_reset_completed", account_id=account_id)
        return Result.success(None)
