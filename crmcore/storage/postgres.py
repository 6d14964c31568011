from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed store for organizations, users, sessions and audit rows.

    Sessions are never cached in process: every liveness check reads the
    ``auth_session`` table so a revocation is visible to all workers at once.
    """

    required_tables = (
        "organization",
        "app_user",
        "user_auth_credential",
        "auth_session",
        "audit_log",
    )

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            org_id=str(row["org_id"]),
            email=row["email"],
            role=Role(row.get("role") or Role.REP.value),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=_aware(row.get("locked_until")),
            last_login_at=_aware(row.get("last_login_at")),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_family=str(row["token_family"]),
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
            ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
            user_agent=row.get("user_agent"),
        )

    # organizations and users
    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM app_user").fetchone()
        return int(row["n"]) if row else 0

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
        org_id = str(uuid.uuid4())
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                with conn.transaction():
                    org_row = conn.execute(
                        "INSERT INTO organization (id, name) VALUES (%s, %s) RETURNING *",
                        (org_id, org_name),
                    ).fetchone()
                    user_row = conn.execute(
                        """
                        INSERT INTO app_user (id, org_id, email, role, first_name, last_name, email_verified)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            user_id,
                            org_id,
                            email,
                            Role(role).value,
                            first_name,
                            last_name,
                            email_verified,
                        ),
                    ).fetchone()
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        """,
                        (user_id, password_hash, password_algo),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        org = Organization(
            id=str(org_row["id"]),
            name=org_row["name"],
            created_at=_aware(org_row["created_at"]),
        )
        return org, self._row_to_user(user_row)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (org_id,)
            ).fetchone()
        if not row:
            return None
        return Organization(
            id=str(row["id"]), name=row["name"], created_at=_aware(row["created_at"])
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_login_state(
        self,
        user_id: str,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = %s,
                    locked_until = %s,
                    last_login_at = COALESCE(%s, last_login_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (failed_login_attempts, locked_until, last_login_at, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token_family, created_at, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_family,
                        session.created_at,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

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

        The DELETE takes the row lock, so a concurrent rotation of the same id
        blocks until this transaction commits and then deletes nothing.
        """
        with self._connect() as conn:
            with conn.transaction():
                old_row = conn.execute(
                    "DELETE FROM auth_session WHERE id = %s RETURNING *",
                    (old_session_id,),
                ).fetchone()
                if not old_row:
                    return None, None
                old = self._row_to_session(old_row)
                if old.is_expired(now):
                    return old, None
                new_row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token_family, created_at, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_session_id,
                        old.user_id,
                        old.token_family,
                        now,
                        expires_at,
                        ip_address if ip_address is not None else old.ip_address,
                        user_agent if user_agent is not None else old.user_agent,
                    ),
                ).fetchone()
        return old, self._row_to_session(new_row)

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    def revoke_org_sessions(self, org_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_session s
                USING app_user u
                WHERE s.user_id = u.id AND u.org_id = %s
                """,
                (org_id,),
            )
            return result.rowcount

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (before,)
            )
            return result.rowcount

    def session_stats_for_org(self, org_id: str, now: datetime) -> SessionStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total,
                       count(*) FILTER (WHERE s.expires_at > %s) AS active
                FROM auth_session s
                JOIN app_user u ON u.id = s.user_id
                WHERE u.org_id = %s
                """,
                (now, org_id),
            ).fetchone()
        total = int(row["total"]) if row else 0
        active = int(row["active"]) if row else 0
        return SessionStats(total=total, active=active, expired=total - active)

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, org_id, user_id, action, object_type, object_id, outcome,
                                       error_message, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.org_id,
                    event.user_id,
                    event.action.value,
                    event.object_type,
                    event.object_id,
                    event.outcome.value,
                    event.error_message,
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, org_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if org_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE org_id = %s ORDER BY created_at DESC LIMIT %s",
                    (org_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                org_id=str(row["org_id"]) if row.get("org_id") else None,
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                action=AuditAction(row["action"]),
                object_type=row["object_type"],
                object_id=row.get("object_id"),
                outcome=AuditOutcome(row["outcome"]),
                error_message=row.get("error_message"),
                ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
                user_agent=row.get("user_agent"),
                created_at=_aware(row["created_at"]),
            )
            for row in rows
        ]
