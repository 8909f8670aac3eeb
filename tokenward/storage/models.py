from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """What a one-time token may be spent on."""

    VERIFY = "verify"
    RESET = "reset"


@dataclass
class ExternalIdentity:
    provider: str
    provider_id: str
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    full_name: Optional[str] = None
    roles: Set[str] = field(default_factory=lambda: {"user"})
    enabled: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    external_identities: List[ExternalIdentity] = field(default_factory=list)
    # Bumped by the store on every successful update_account
    version: int = 0

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class RefreshTokenRecord:
    id: str
    token_id: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False

    @classmethod
    def new(
        cls, account_id: str, ttl_seconds: int, *, now: Optional[datetime] = None
    ) -> "RefreshTokenRecord":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_id=str(uuid.uuid4()),
            account_id=account_id,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OneTimeTokenRecord:
    id: str
    token: str
    account_id: str
    expires_at: datetime
    purpose: TokenPurpose

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
