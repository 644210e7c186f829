from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Identity provider that owns an account's sign-in."""

    LOCAL = "local"
    GOOGLE = "google"
    APPLE = "apple"

    @property
    def is_social(self) -> bool:
        return self is not Provider.LOCAL


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING_VERIFICATION = "pending_verification"


# Statuses that may sign in and refresh; verification is not a gate
SIGN_IN_STATUSES = frozenset({UserStatus.ACTIVE, UserStatus.PENDING_VERIFICATION})


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_token(token: str) -> str:
    """Stored representation of a refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class User:
    id: str
    email: str
    provider: Provider = Provider.LOCAL
    password_hash: Optional[str] = None
    provider_id: Optional[str] = None
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.email = normalize_email(self.email)
        self.provider = Provider(self.provider)
        self.status = UserStatus(self.status)
        if self.provider is Provider.LOCAL and not self.password_hash:
            raise ValueError("local account must have a password hash")
        if self.provider.is_social and not self.provider_id:
            raise ValueError("social account must have a provider id")

    @classmethod
    def new_local(
        cls,
        email: str,
        password_hash: str,
        *,
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> "User":
        now = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            provider=Provider.LOCAL,
            password_hash=password_hash,
            status=UserStatus.ACTIVE if email_verified else UserStatus.PENDING_VERIFICATION,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def new_social(
        cls,
        email: str,
        provider: Provider,
        provider_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> "User":
        provider = Provider(provider)
        if not provider.is_social:
            raise ValueError("cannot create social user with local provider")
        now = now or _utcnow()
        # The provider attests the address
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            provider=provider,
            provider_id=provider_id,
            status=UserStatus.ACTIVE,
            email_verified=True,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status in SIGN_IN_STATUSES

    @property
    def is_local_account(self) -> bool:
        return self.provider is Provider.LOCAL

    @property
    def is_social_account(self) -> bool:
        return self.provider.is_social

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or _utcnow()


@dataclass
class RefreshSession:
    id: str
    user_id: str
    token_hash: str
    token_id: str
    expires_at: datetime
    created_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        token_id: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshSession":
        if not user_id:
            raise ValueError("user id is required")
        if not token or not token.strip():
            raise ValueError("token is required")
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=hash_token(token),
            token_id=token_id,
            expires_at=expires_at,
            created_at=now or _utcnow(),
            device_info=device_info,
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime) -> bool:
        # Inclusive: a session expiring exactly now is already expired
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)

    def remaining_seconds(self, now: datetime) -> int:
        if self.is_expired(now):
            return 0
        return int((self.expires_at - now).total_seconds())

    def is_same_device(self, device_info: Optional[str]) -> bool:
        return self.device_info == device_info


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }
