from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    """Lifecycle of a principal; deactivation is a tombstone, never a delete."""

    ACTIVE = "active"
    DEACTIVATED = "deactivated"


@dataclass
class User:
    id: str
    email: str
    name: str
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE and self.deleted_at is None


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class RefreshSession:
    """One live refresh token, i.e. one device slot of a principal."""

    id: str
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, token: str, expires_at: datetime) -> "RefreshSession":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            created_at=utcnow(),
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    principal_id: str
    email: str
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
