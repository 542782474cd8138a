from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# 32 bytes -> 256 bits of entropy, ~43 URL-safe characters
REFRESH_TOKEN_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Third-party identity providers accepted for federation."""

    GOOGLE = "GOOGLE"
    KAKAO = "KAKAO"

    @classmethod
    def parse(cls, value: "Provider | str") -> Optional["Provider"]:
        if isinstance(value, Provider):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Account:
    id: str
    email: str
    display_name: str
    provider: Provider
    provider_subject_id: str
    avatar_url: Optional[str] = None
    role: Role = Role.USER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        email: str,
        display_name: str,
        provider: Provider,
        provider_subject_id: str,
        avatar_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Account":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            provider=provider,
            provider_subject_id=provider_subject_id,
            avatar_url=avatar_url,
            role=Role.USER,
            created_at=created,
            updated_at=created,
        )

    def with_profile(
        self, display_name: str, avatar_url: Optional[str], now: datetime
    ) -> "Account":
        """Snapshot carrying the latest provider profile."""
        return replace(
            self, display_name=display_name, avatar_url=avatar_url, updated_at=now
        )

    def with_role(self, role: Role, now: datetime) -> "Account":
        return replace(self, role=role, updated_at=now)


@dataclass(frozen=True)
class RefreshCredential:
    id: str
    account_id: str
    token_value: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def issue(
        cls, account_id: str, ttl: timedelta, now: Optional[datetime] = None
    ) -> "RefreshCredential":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_value=secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
            expires_at=created + ttl,
            revoked=False,
            created_at=created,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def revoked_copy(self) -> "RefreshCredential":
        return replace(self, revoked=True)


@dataclass(frozen=True)
class AccountView:
    """Read-only projection of an account handed to callers."""

    id: str
    email: str
    display_name: str
    avatar_url: Optional[str]
    provider: Provider
    role: Role
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            avatar_url=account.avatar_url,
            provider=account.provider,
            role=account.role,
            created_at=account.created_at,
        )


@dataclass(frozen=True)
class AccessClaims:
    """Verified claim set of an access token."""

    account_id: str
    email: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
