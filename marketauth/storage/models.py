from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from marketauth.config import PrincipalKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    """Security attributes of any credential holder, whatever its kind."""

    id: str
    kind: PrincipalKind
    identifier: str
    password_hash: str
    password_algo: str = "argon2id"
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        kind: PrincipalKind,
        identifier: str,
        password_hash: str,
        *,
        is_active: bool = True,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            kind=PrincipalKind(kind),
            identifier=identifier,
            password_hash=password_hash,
            is_active=is_active,
        )


@dataclass(frozen=True)
class LockoutState:
    """The lockout counters of a principal, as one atomic unit of change."""

    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class AccessClaims:
    principal_id: str
    kind: PrincipalKind
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    principal_id: str
    token_id: str
    kind: Optional[PrincipalKind]
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_token_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
