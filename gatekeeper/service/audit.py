from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from gatekeeper.logging import get_logger, redact_email
from gatekeeper.service.repository import AuditStore
from gatekeeper.storage.errors import StorageUnavailableError
from gatekeeper.storage.models import AuditAction, AuditEvent

logger = get_logger("gatekeeper.audit")


class AuditSink(Protocol):
    def record(
        self,
        action: AuditAction,
        *,
        identity_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        ...


class StoreAuditSink:
    """Writes security events to the store and mirrors them to the structured log.

    A failing store never fails the request that produced the event; the
    event is still emitted to the log so it is not lost.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        *,
        identity_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent.new(
            action,
            identity_id=identity_id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        logger.info(
            "audit_event",
            action=action.value,
            identity_id=identity_id,
            account=redact_email(email) if email else None,
            ip_address=ip_address,
            details=details or {},
        )
        try:
            self.store.record_audit_event(event)
        except StorageUnavailableError as exc:
            logger.error("audit_persist_failed", action=action.value, error=str(exc))
            return None
        return event

    def recent(self, *, identity_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(identity_id=identity_id, limit=limit)
