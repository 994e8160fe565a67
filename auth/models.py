"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work; these classes own the shape.

User is the full record as persisted, secrets included. It never leaves the
core: every operation that returns a user returns PublicUser, built with
PublicUser.from_user(), which drops password_hash, refresh_token and
refresh_token_expires_at.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A registered account.

    refresh_token and refresh_token_expires_at are either both set or both
    None. UserStore writes them in one UPDATE; nothing else touches them.
    """

    email: str  # normalized: trimmed, lower-cased
    password_hash: str
    name: str
    id: str | None = None  # UUID string, assigned by UserStore.create_user()
    refresh_token: str | None = None
    refresh_token_expires_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PublicUser:
    """A sanitized user -- safe to return to any caller."""

    id: str
    email: str
    name: str
    created_at: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "PublicUser":
        return cls(id=user.id, email=user.email, name=user.name, created_at=user.created_at)


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    email: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    subject: str
    token_kind: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    """Raw token strings plus the expiry hints the boundary needs for cookies."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    user: PublicUser
