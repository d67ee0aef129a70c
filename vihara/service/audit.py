from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from vihara.logging import get_logger, scrub_payload
from vihara.service.errors import AuditWriteFailure
from vihara.storage.models import AuditEvent, Role, utcnow

logger = get_logger(__name__)

ANONYMOUS_ACTOR = "unknown"
SYSTEM_ACTOR = "system"


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...


class AuditSink:
    """Best-effort append-only audit log.

    ``record`` never raises: a failed append is logged as
    ``audit_write_failed`` and kept on ``last_failure`` for inspection, and the
    calling operation carries on with its own outcome.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store
        self.last_failure: Optional[AuditWriteFailure] = None

    def record(
        self,
        action: str,
        *,
        actor_role: "Role | str | None" = None,
        actor_id: Optional[int] = None,
        entity: Optional[str] = None,
        record_id: Any = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        if isinstance(actor_role, Role):
            role_label = actor_role.value
        else:
            role_label = actor_role or ANONYMOUS_ACTOR
        event = AuditEvent(
            action=action,
            actor_role=role_label,
            actor_id=int(actor_id or 0),
            entity=entity,
            record_id=str(record_id) if record_id is not None else None,
            old_values=scrub_payload(old_values) if old_values is not None else None,
            new_values=scrub_payload(new_values) if new_values is not None else None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        try:
            return self.store.append_audit_event(event)
        except Exception as exc:
            self.last_failure = AuditWriteFailure(
                f"audit append failed for {action}",
                detail={"action": action, "error_type": type(exc).__name__},
            )
            logger.error(
                "audit_write_failed",
                action=action,
                actor_role=role_label,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
