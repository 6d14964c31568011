from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from crmcore.logging import get_logger
from crmcore.storage.errors import ConstraintViolation
from crmcore.storage.models import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    Organization,
    Role,
    Session,
    SessionStats,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    mutation so a restarted dev server keeps its users and sessions.
    """

    def __init__(
        self, fs_root: str = "/tmp/crmcore", *, max_audit_events: int = 1000
    ) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditEvent] = []
        self.max_audit_events = max_audit_events
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # -- organizations and users -------------------------------------------

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def create_organization_with_user(
        self,
        org_name: str,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: Role = Role.REP,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Tuple[Organization, User]:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            org = Organization(id=str(uuid.uuid4()), name=org_name)
            user = User(
                id=str(uuid.uuid4()),
                org_id=org.id,
                email=email,
                role=Role(role),
                first_name=first_name,
                last_name=last_name,
                email_verified=email_verified,
            )
            self.organizations[org.id] = org
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return org, replace(user)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            return replace(org) if org else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = failed_login_attempts
            user.locked_until = locked_until
            if last_login_at is not None:
                user.last_login_at = last_login_at
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def rotate_session(
        self,
        old_session_id: str,
        *,
        new_session_id: str,
        expires_at: datetime,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Optional[Session], Optional[Session]]:
        """Swap ``old_session_id`` for a new row in the same token family.

        Returns ``(old, new)``. ``old`` is None when the row was already gone;
        ``new`` is None when the old row had expired (it is still removed).
        """
        with self._data_lock:
            old = self.sessions.pop(old_session_id, None)
            if old is None:
                return None, None
            if old.is_expired(now):
                self._persist_state()
                return old, None
            new = Session(
                id=new_session_id,
                user_id=old.user_id,
                token_family=old.token_family,
                created_at=now,
                expires_at=expires_at,
                ip_address=ip_address if ip_address is not None else old.ip_address,
                user_agent=user_agent if user_agent is not None else old.user_agent,
            )
            self.sessions[new.id] = new
            self._persist_state()
            return old, replace(new)

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def revoke_org_sessions(self, org_id: str) -> int:
        with self._data_lock:
            members = {uid for uid, user in self.users.items() if user.org_id == org_id}
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id in members]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at < before]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def session_stats_for_org(self, org_id: str, now: datetime) -> SessionStats:
        with self._data_lock:
            members = {uid for uid, user in self.users.items() if user.org_id == org_id}
            stats = SessionStats()
            for sess in self.sessions.values():
                if sess.user_id not in members:
                    continue
                stats.total += 1
                if sess.is_expired(now):
                    stats.expired += 1
                else:
                    stats.active += 1
            return stats

    # -- audit -------------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            # Oldest events drop off so the snapshot stays bounded
            del self.audit_events[: -self.max_audit_events]
            self._persist_state()

    def list_audit_events(
        self, org_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if not org_id or e.org_id == org_id]
            return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "organizations": [
                self._serialize_organization(o) for o in self.organizations.values()
            ],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.organizations = {
            o["id"]: self._deserialize_organization(o)
            for o in data.get("organizations", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ][-self.max_audit_events :]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_organization(self, org: Organization) -> dict:
        return {
            "id": org.id,
            "name": org.name,
            "created_at": self._serialize_datetime(org.created_at),
        }

    def _deserialize_organization(self, data: dict) -> Organization:
        return Organization(
            id=str(data["id"]),
            name=data["name"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "org_id": user.org_id,
            "email": user.email,
            "role": user.role.value,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            org_id=str(data["org_id"]),
            email=data["email"],
            role=Role(data.get("role", Role.REP.value)),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_family": session.token_family,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_family=data["token_family"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "org_id": event.org_id,
            "user_id": event.user_id,
            "action": event.action.value,
            "object_type": event.object_type,
            "object_id": event.object_id,
            "outcome": event.outcome.value,
            "error_message": event.error_message,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            org_id=data.get("org_id"),
            user_id=data.get("user_id"),
            action=AuditAction(data["action"]),
            object_type=data["object_type"],
            object_id=data.get("object_id"),
            outcome=AuditOutcome(data.get("outcome", AuditOutcome.SUCCESS.value)),
            error_message=data.get("error_message"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
