from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Roles read by the permission layer from the ``role`` token claim."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    REP = "REP"
    READ_ONLY = "READ_ONLY"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    UPDATE = "UPDATE"


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass
class Organization:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    org_id: str
    email: str
    role: Role = Role.REP
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """One live refresh-token lineage.

    ``id`` doubles as the ``jti`` of both tokens in the pair bound to this
    session, so deleting the row revokes the access and refresh token at once.
    """

    id: str
    user_id: str
    token_family: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        *,
        token_family: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_family=token_family or str(uuid.uuid4()),
            created_at=created,
            expires_at=created + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditEvent:
    id: str
    org_id: Optional[str]
    user_id: Optional[str]
    action: AuditAction
    object_type: str
    object_id: Optional[str] = None
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionStats:
    total: int = 0
    active: int = 0
    expired: int = 0
