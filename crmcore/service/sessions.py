from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Tuple

from crmcore.logging import get_logger
from crmcore.service.errors import SessionExpiredError, SessionNotFoundError
from crmcore.storage.models import Session, SessionStats

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        old_session_id: str,
        *,
        new_session_id: str,
        expires_at: datetime,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Optional[Session], Optional[Session]]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def revoke_org_sessions(self, org_id: str) -> int: ...

    def delete_expired_sessions(self, before: datetime) -> int: ...

    def session_stats_for_org(self, org_id: str, now: datetime) -> SessionStats: ...


class SessionManager:
    """Owns the session rows that back every refresh-token lineage.

    A session id is the ``jti`` shared by an access/refresh pair. Rotation is
    delegated to the store's atomic swap, which is what makes a replayed
    refresh token fail: the loser of a race finds no row to delete.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        session_ttl: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.session_ttl = session_ttl
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def create_session(
        self,
        user_id: str,
        *,
        token_family: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            self.session_ttl,
            token_family=token_family,
            ip_address=ip_address,
            user_agent=user_agent,
            now=self.clock(),
        )
        self.store.create_session(session)
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            token_family=session.token_family,
        )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def rotate_session(
        self,
        old_session_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self.clock()
        old, new = self.store.rotate_session(
            old_session_id,
            new_session_id=str(uuid.uuid4()),
            expires_at=now + self.session_ttl,
            now=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if old is None:
            # Already rotated, revoked or purged: a replayed refresh token lands here
            logger.warning("session_rotation_missing", session_id=old_session_id)
            raise SessionNotFoundError()
        if new is None:
            logger.info(
                "session_rotation_expired",
                session_id=old_session_id,
                user_id=old.user_id,
            )
            raise SessionExpiredError()
        logger.info(
            "session_rotated",
            old_session_id=old.id,
            session_id=new.id,
            user_id=new.user_id,
            token_family=new.token_family,
        )
        return new

    def revoke(self, session_id: str) -> bool:
        removed = self.store.revoke_session(session_id)
        logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def is_live(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        session = self.store.get_session(session_id)
        return session is not None and not session.is_expired(self.clock())

    def cleanup_expired(self, older_than_hours: int = 24) -> int:
        """Purge rows that expired more than ``older_than_hours`` ago."""
        cutoff = self.clock() - timedelta(hours=older_than_hours)
        count = self.store.delete_expired_sessions(cutoff)
        logger.info(
            "session_cleanup_completed",
            deleted=count,
            older_than_hours=older_than_hours,
        )
        return count

    def cleanup_org_sessions(self, org_id: str) -> int:
        count = self.store.revoke_org_sessions(org_id)
        logger.info("org_sessions_revoked", org_id=org_id, count=count)
        return count

    def stats_for_org(self, org_id: str) -> SessionStats:
        return self.store.session_stats_for_org(org_id, self.clock())
