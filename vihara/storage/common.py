"""Common storage utilities shared between memory and postgres implementations.

Both backends describe rows with the same column names (those of the
``schema.sql`` tables), so row <-> model conversion lives here once.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from vihara.storage.models import (
    AuditEvent,
    Principal,
    Role,
    Session,
    SessionEndReason,
)

SESSIONS_TABLE = "user_sessions"
AUDIT_TABLE = "system_logs"


def normalize_login(value: Optional[str]) -> str:
    """Case-fold a login name or email for comparisons."""
    return (value or "").strip().lower()


def coerce_datetime(raw: Any) -> Optional[datetime]:
    """Parse ISO strings and attach UTC to naive datetimes."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = datetime.fromisoformat(raw)
    if raw.tzinfo is None:
        return raw.replace(tzinfo=timezone.utc)
    return raw


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column from a string or dict.

    Args:
        raw_meta: Raw value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def principal_from_row(role: Role, row: Any) -> Principal:
    return Principal(
        id=int(row[role.id_field]),
        role=role,
        login_name=row["username"],
        email=row["email"],
        password_hash=row["password"],
        display_name=safe_row_value(row, "full_name") or "",
        active=bool(safe_row_value(row, "is_active", True)),
        profile=parse_json_meta(safe_row_value(row, "profile")) or {},
        created_at=coerce_datetime(safe_row_value(row, "created_at")) or datetime.now(timezone.utc),
        updated_at=coerce_datetime(safe_row_value(row, "updated_at")),
    )


def principal_to_row(principal: Principal) -> Dict[str, Any]:
    return {
        principal.role.id_field: principal.id,
        "username": principal.login_name,
        "email": principal.email,
        "password": principal.password_hash,
        "full_name": principal.display_name,
        "is_active": principal.active,
        "profile": principal.profile,
        "created_at": serialize_datetime(principal.created_at),
        "updated_at": serialize_datetime(principal.updated_at),
    }


def session_from_row(row: Any) -> Session:
    raw_reason = safe_row_value(row, "end_reason")
    return Session(
        token=str(row["session_id"]),
        role=Role(row["user_type"]),
        principal_id=int(row["user_id"]),
        login_at=coerce_datetime(row["login_time"]),
        last_activity_at=coerce_datetime(row["last_activity"]),
        ip_addr=safe_row_value(row, "ip_address") or None,
        user_agent=safe_row_value(row, "user_agent") or None,
        active=bool(safe_row_value(row, "is_active", True)),
        ended_at=coerce_datetime(safe_row_value(row, "ended_at")),
        end_reason=SessionEndReason(raw_reason) if raw_reason else None,
    )


def session_to_row(session: Session) -> Dict[str, Any]:
    return {
        "session_id": session.token,
        "user_type": session.role.value,
        "user_id": session.principal_id,
        "ip_address": session.ip_addr,
        "user_agent": session.user_agent,
        "login_time": serialize_datetime(session.login_at),
        "last_activity": serialize_datetime(session.last_activity_at),
        "is_active": session.active,
        "ended_at": serialize_datetime(session.ended_at),
        "end_reason": session.end_reason.value if session.end_reason else None,
    }


def audit_from_row(row: Any) -> AuditEvent:
    record_id = safe_row_value(row, "record_id")
    return AuditEvent(
        id=safe_row_value(row, "log_id"),
        actor_role=row["user_type"],
        actor_id=int(safe_row_value(row, "user_id", 0) or 0),
        action=row["action"],
        entity=safe_row_value(row, "table_affected"),
        record_id=str(record_id) if record_id is not None else None,
        old_values=parse_json_meta(safe_row_value(row, "old_values")),
        new_values=parse_json_meta(safe_row_value(row, "new_values")),
        ip_addr=safe_row_value(row, "ip_address"),
        user_agent=safe_row_value(row, "user_agent"),
        created_at=coerce_datetime(safe_row_value(row, "created_at")) or datetime.now(timezone.utc),
    )


def audit_to_row(event: AuditEvent) -> Dict[str, Any]:
    return {
        "log_id": event.id,
        "user_type": event.actor_role,
        "user_id": event.actor_id,
        "action": event.action,
        "table_affected": event.entity,
        "record_id": event.record_id,
        "old_values": event.old_values,
        "new_values": event.new_values,
        "ip_address": event.ip_addr,
        "user_agent": event.user_agent,
        "created_at": serialize_datetime(event.created_at),
    }
