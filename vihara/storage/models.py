from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# 32 random bytes, hex encoded
SESSION_TOKEN_BYTES = 32
SESSION_TOKEN_LENGTH = SESSION_TOKEN_BYTES * 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Principal partitions. Every member owns exactly one credential table."""

    ADMIN = "admin"
    MONK = "monk"
    DOCTOR = "doctor"
    DONATOR = "donator"

    @property
    def table(self) -> str:
        return _ROLE_TABLES[self]

    @property
    def id_field(self) -> str:
        return f"{self.value}_id"

    @property
    def dashboard_path(self) -> str:
        return f"/{self.value}/dashboard"

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role":
        """Return the member for ``value`` or raise ``ValueError``."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"unknown role: {value!r}")
        return cls(value.strip().lower())


_ROLE_TABLES: Dict[Role, str] = {
    Role.ADMIN: "admins",
    Role.MONK: "monks",
    Role.DOCTOR: "doctors",
    Role.DONATOR: "donators",
}

if set(_ROLE_TABLES) != set(Role):  # pragma: no cover - import-time guard
    raise RuntimeError("every Role must map to a credential table")


class SessionEndReason(str, Enum):
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"
    DEACTIVATED = "deactivated"
    ADMIN_TERMINATED = "admin_terminated"
    SUPERSEDED = "superseded"


@dataclass
class Principal:
    id: int
    role: Role
    login_name: str
    email: str
    password_hash: str
    display_name: str = ""
    active: bool = True
    profile: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class Session:
    token: str
    role: Role
    principal_id: int
    login_at: datetime
    last_activity_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[SessionEndReason] = None

    @classmethod
    def new(
        cls,
        principal_id: int,
        role: Role,
        *,
        now: Optional[datetime] = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            token=secrets.token_hex(SESSION_TOKEN_BYTES),
            role=role,
            principal_id=principal_id,
            login_at=issued,
            last_activity_at=issued,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity_at).total_seconds()


@dataclass
class AuditEvent:
    action: str
    actor_role: str = "system"
    actor_id: int = 0
    entity: Optional[str] = None
    record_id: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
