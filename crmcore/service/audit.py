from __future__ import annotations

import uuid
from typing import Optional, Protocol

from crmcore.logging import get_logger, sanitize_error_message
from crmcore.storage.models import AuditAction, AuditEvent, AuditOutcome

logger = get_logger(__name__)


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class AuditService:
    """Best-effort audit trail for auth actions.

    ``record`` never raises: a broken audit table must not block a login or
    a password reset, so failures are logged and dropped.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        *,
        org_id: Optional[str],
        user_id: Optional[str],
        object_type: str = "User",
        object_id: Optional[str] = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            org_id=org_id,
            user_id=user_id,
            action=action,
            object_type=object_type,
            object_id=object_id,
            outcome=outcome,
            error_message=sanitize_error_message(error_message) if error_message else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return event
