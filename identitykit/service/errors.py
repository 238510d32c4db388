from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``;
    ``title`` is the short human label rendered next to the code.
    """

    status_code: int = 400
    error_code: str = "CONSTRAINT_VIOLATION"
    title: str = "Constraint violation"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict | list] = None,
        error_code: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if title is not None:
            self.title = title
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "CONSTRAINT_VIOLATION"
    title = "Constraint violation"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "UNKNOWN_ERROR"
    title = "Unknown error"


class AuthErrorKind(Enum):
    """Domain failures of the identity operations.

    Each kind maps to a fixed (title, error_code, HTTP status) triple; see
    ``ERROR_TRIPLES``.
    """

    ACCOUNT_ALREADY_EXISTS = "ACCOUNT_ALREADY_EXISTS"
    ACCOUNT_DOES_NOT_EXIST = "ACCOUNT_DOES_NOT_EXIST"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    INVALID_ACCESS_TOKEN = "INVALID_ACCESS_TOKEN"
    INVALID_PASSWORD_RESET_URL = "INVALID_PASSWORD_RESET_URL"
    UNABLE_TO_PERSIST = "UNABLE_TO_PERSIST"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def title(self) -> str:
        return ERROR_TRIPLES[self][0]

    @property
    def error_code(self) -> str:
        return ERROR_TRIPLES[self][1]

    @property
    def status_code(self) -> int:
        return ERROR_TRIPLES[self][2]


ERROR_TRIPLES: dict[AuthErrorKind, tuple[str, str, int]] = {
    AuthErrorKind.ACCOUNT_ALREADY_EXISTS: ("Account already exists", "ACCOUNT_ALREADY_EXISTS", 409),
    AuthErrorKind.ACCOUNT_DOES_NOT_EXIST: ("Account does not exist", "ACCOUNT_NOT_FOUND", 409),
    AuthErrorKind.INVALID_CREDENTIALS: ("Invalid credentials", "INVALID_CREDENTIALS", 409),
    AuthErrorKind.INVALID_REFRESH_TOKEN: ("Invalid refresh token", "INVALID_TOKEN", 401),
    AuthErrorKind.REFRESH_TOKEN_EXPIRED: ("Refresh token expired", "TOKEN_EXPIRED", 401),
    AuthErrorKind.INVALID_ACCESS_TOKEN: ("Invalid access token", "INVALID_TOKEN", 401),
    AuthErrorKind.INVALID_PASSWORD_RESET_URL: ("Invalid password reset url", "INVALID_TOKEN", 400),
    AuthErrorKind.UNABLE_TO_PERSIST: ("Unable to persist", "PERSISTENCE_FAILED", 409),
    AuthErrorKind.EMAIL_DELIVERY_FAILED: ("Email delivery failed", "EMAIL_DELIVERY_FAILED", 409),
    AuthErrorKind.REGISTRATION_FAILED: ("Registration failed", "UNKNOWN_ERROR", 500),
    AuthErrorKind.UNKNOWN_ERROR: ("Unknown error", "UNKNOWN_ERROR", 500),
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a core operation: either ``value`` or an ``error`` kind."""

    value: Optional[T] = None
    error: Optional[AuthErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthErrorKind, message: Optional[str] = None) -> "Result[T]":
        return cls(error=error, message=message or error.title)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise :class:`AuthError` for a failed result."""
        if self.error is not None:
            raise AuthError(self.error, self.message)
        return self.value  # type: ignore[return-value]


class AuthError(ServiceError):
    """A failed :class:`Result` crossing the HTTP boundary."""

    def __init__(self, kind: AuthErrorKind, message: Optional[str] = None) -> None:
        super().__init__(
            message or kind.title,
            status_code=kind.status_code,
            error_code=kind.error_code,
            title=kind.title,
        )
        self.kind = kind


__all__ = [
    "ServiceError",
    "ValidationError",
    "ServerError",
    "AuthErrorKind",
    "ERROR_TRIPLES",
    "Result",
    "AuthError",
]
