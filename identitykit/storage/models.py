from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

DEFAULT_ROLE = "USER"
ADMIN_ROLE = "ADMIN"


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    status: AccountStatus = AccountStatus.ACTIVE
    roles: Set[str] = field(default_factory=lambda: {DEFAULT_ROLE})
    quota: str = "10GB"
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        roles: Optional[Set[str]] = None,
        quota: str = "10GB",
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            roles=set(roles) if roles else {DEFAULT_ROLE},
            quota=quota,
        )

    def view(self) -> "AccountView":
        return AccountView(
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            roles=sorted(self.roles),
            status=self.status,
            quota=self.quota,
        )


@dataclass(frozen=True)
class AccountView:
    """Public projection of an account; never carries the password hash."""

    email: str
    first_name: str
    last_name: str
    roles: List[str]
    status: AccountStatus
    quota: str


@dataclass
class RefreshTokenRecord:
    id: int
    account_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetRecord:
    id: int
    account_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttemptRecord:
    id: int
    account_id: str
    success: bool
    attempted_at: datetime = field(default_factory=utcnow)
