from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: int
    username: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    role: str = "user"
    permissions: List[str] = field(default_factory=list)
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_verified_email(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class SessionToken:
    id: int
    account_id: int
    name: str
    token_hash: str
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass
class PasswordResetRecord:
    email: str
    token_hash: str
    created_at: datetime = field(default_factory=utcnow)
