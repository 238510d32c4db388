from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Set

from identitykit.config import AuthConfig
from identitykit.logging import get_logger
from identitykit.service.errors import AuthErrorKind, Result
from identitykit.service.login_attempts import LoginAttemptRecorder
from identitykit.service.password_reset import PasswordResetFlow, ResetMailer
from identitykit.service.passwords import PasswordHasher
from identitykit.service.refresh_tokens import RefreshCheck, RefreshTokenStore
from identitykit.service.tokens import (
    ACCESS,
    PASSWORD_RESET,
    REFRESH,
    Clock,
    ExpiredToken,
    InvalidToken,
    TokenCodec,
    utc_clock,
)
from identitykit.storage.errors import ConstraintViolation, StorageError
from identitykit.storage.models import (
    DEFAULT_ROLE,
    Account,
    AccountView,
    LoginAttemptRecord,
    PasswordResetRecord,
    RefreshTokenRecord,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        roles: Optional[Set[str]] = None,
        quota: str = "10GB",
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]: ...

    def record_login(
        self, account_id: str, when: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def add_refresh_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def latest_refresh_token(self, account_id: str) -> Optional[RefreshTokenRecord]: ...

    def add_password_reset(
        self, account_id: str, token: str, expires_at: datetime
    ) -> PasswordResetRecord: ...

    def latest_password_reset(self, account_id: str) -> Optional[PasswordResetRecord]: ...

    def add_login_attempt(
        self,
        account_id: str,
        success: bool,
        attempted_at: Optional[datetime] = None,
    ) -> LoginAttemptRecord: ...

    def list_login_attempts(self, account_id: str) -> List[LoginAttemptRecord]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _unknown_on_error(func):
    """Turn an unexpected exception into ``UNKNOWN_ERROR`` after logging it."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except Exception as exc:
            logger.exception(
                "auth_operation_failed",
                operation=func.__name__,
                error_type=type(exc).__name__,
            )
            return Result.failure(AuthErrorKind.UNKNOWN_ERROR)

    return wrapper


class AuthService:
    """Registration, login, token rotation and password reset over an :class:`AuthStore`."""

    def __init__(
        self,
        store: AuthStore,
        config: AuthConfig,
        *,
        mailer: ResetMailer,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store: AuthStore = store
        self.config = config
        self._clock = clock or utc_clock
        self.hasher = hasher or PasswordHasher()
        self.codec = codec or TokenCodec(config, clock=self._clock)
        self.refresh_tokens = RefreshTokenStore(store, clock=self._clock)
        self.login_attempts = LoginAttemptRecorder(store, clock=self._clock)
        self.password_reset = PasswordResetFlow(
            store, self.codec, mailer, config, clock=self._clock
        )
        self.logger = logger

    @_unknown_on_error
    async def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> Result[Account]:
        normalized = normalize_email(email)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            account = await asyncio.to_thread(
                functools.partial(
                    self.store.create_account,
                    normalized,
                    password_hash,
                    first_name,
                    last_name,
                    roles={DEFAULT_ROLE},
                    quota=self.config.default_quota,
                )
            )
        except ConstraintViolation:
            self.logger.info("registration_duplicate_email")
            return Result.failure(AuthErrorKind.ACCOUNT_ALREADY_EXISTS)
        except StorageError as exc:
            self.logger.error("registration_failed", error=str(exc))
            return Result.failure(AuthErrorKind.REGISTRATION_FAILED)
        self.logger.info("account_registered", account_id=account.id)
        return Result.success(account)

    @_unknown_on_error
    async def login(self, email: str, password: str) -> Result[TokenPair]:
        account = await asyncio.to_thread(
            self.store.get_account_by_email, normalize_email(email)
        )
        if account is None:
            self.logger.info("login_unknown_account")
            return Result.failure(AuthErrorKind.ACCOUNT_DOES_NOT_EXIST)

        verified = await asyncio.to_thread(
            self.hasher.verify, password, account.password_hash
        )
        audit = await self.login_attempts.record(account.id, verified)
        if not audit.ok:
            self.logger.warning("login_attempt_not_recorded", account_id=account.id)
        if not verified:
            self.logger.info("login_failed", account_id=account.id)
            return Result.failure(AuthErrorKind.INVALID_CREDENTIALS)

        try:
            await asyncio.to_thread(self.store.record_login, account.id, self._clock())
        except StorageError as exc:
            self.logger.warning(
                "last_login_not_recorded", account_id=account.id, error=str(exc)
            )

        issued = await self._issue_pair(account)
        if issued.ok:
            self.logger.info("login_succeeded", account_id=account.id)
        return issued

    @_unknown_on_error
    async def refresh(self, refresh_token: str) -> Result[TokenPair]:
        try:
            account_id = self.codec.parse_subject(refresh_token, REFRESH)
        except ExpiredToken:
            return Result.failure(AuthErrorKind.REFRESH_TOKEN_EXPIRED)
        except InvalidToken as exc:
            self.logger.warning("refresh_token_rejected", reason=str(exc))
            return Result.failure(AuthErrorKind.INVALID_REFRESH_TOKEN)

        check = await self.refresh_tokens.validate(account_id, refresh_token)
        if check is RefreshCheck.EXPIRED:
            return Result.failure(AuthErrorKind.REFRESH_TOKEN_EXPIRED)
        if check is not RefreshCheck.OK:
            return Result.failure(AuthErrorKind.INVALID_REFRESH_TOKEN)

        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None:
            self.logger.warning("refresh_account_missing", account_id=account_id)
            return Result.failure(AuthErrorKind.INVALID_REFRESH_TOKEN)

        issued = await self._issue_pair(account)
        if issued.ok:
            self.logger.info("refresh_token_rotated", account_id=account.id)
        return issued

    @_unknown_on_error
    async def fetch_current_user(self, account_id: str) -> Result[AccountView]:
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None:
            return Result.failure(AuthErrorKind.ACCOUNT_DOES_NOT_EXIST)
        return Result.success(account.view())

    @_unknown_on_error
    async def authenticate_access_token(self, token: str) -> Result[str]:
        try:
            return Result.success(self.codec.parse_subject(token, ACCESS))
        except InvalidToken as exc:
            self.logger.info("access_token_rejected", reason=str(exc))
            return Result.failure(AuthErrorKind.INVALID_ACCESS_TOKEN)

    @_unknown_on_error
    async def forgot_password(self, email: str) -> Result[None]:
        account = await asyncio.to_thread(
            self.store.get_account_by_email, normalize_email(email)
        )
        if account is None:
            return Result.failure(AuthErrorKind.ACCOUNT_DOES_NOT_EXIST)
        return await self.password_reset.request_reset(account)

    @_unknown_on_error
    async def reset_password(self, token: str, new_password: str) -> Result[None]:
        try:
            account_id = self.codec.parse_subject(token, PASSWORD_RESET)
        except InvalidToken as exc:
            self.logger.warning("password_reset_token_rejected", reason=str(exc))
            return Result.failure(AuthErrorKind.INVALID_PASSWORD_RESET_URL)
        return await self.password_reset.validate_and_consume(
            account_id, token, new_password, self._apply_new_password
        )

    async def _apply_new_password(self, account_id: str, new_password: str) -> Result[None]:
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None:
            return Result.failure(AuthErrorKind.ACCOUNT_DOES_NOT_EXIST)
        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        try:
            updated = await asyncio.to_thread(
                self.store.update_password, account_id, password_hash
            )
        except StorageError as exc:
            self.logger.error(
                "password_update_failed", account_id=account_id, error=str(exc)
            )
            return Result.failure(AuthErrorKind.UNABLE_TO_PERSIST)
        if updated is None:
            return Result.failure(AuthErrorKind.ACCOUNT_DOES_NOT_EXIST)
        return Result.success(None)

    async def _issue_pair(self, account: Account) -> Result[TokenPair]:
        access_ttl = self.config.access_token_ttl_seconds
        refresh_ttl = self.config.refresh_token_ttl_seconds
        access_token = self.codec.issue_access(account.id, account.roles, access_ttl)
        refresh_token = self.codec.issue_refresh(account.id, account.roles, refresh_ttl)
        expires_at = self._clock() + timedelta(seconds=refresh_ttl)
        persisted = await self.refresh_tokens.persist(account.id, refresh_token, expires_at)
        if not persisted.ok:
            return Result.failure(AuthErrorKind.UNABLE_TO_PERSIST)
        return Result.success(
            TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=access_ttl,
            )
        )
