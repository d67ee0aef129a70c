from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from vihara.logging import get_logger
from vihara.storage.common import (
    audit_from_row,
    audit_to_row,
    normalize_login,
    principal_from_row,
    principal_to_row,
    session_from_row,
    session_to_row,
)
from vihara.storage.errors import ConstraintViolation, StoreError
from vihara.storage.models import (
    AuditEvent,
    Principal,
    Role,
    Session,
    SessionEndReason,
    utcnow,
)


class MemoryStore:
    """In-process credential, session and audit store for tests and local runs.

    Records handed out are copies, so callers observe the same
    read-then-write semantics they would get from Postgres.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[Role, Dict[int, Principal]] = {role: {} for role in Role}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditEvent] = []
        self._principal_seq: Dict[Role, int] = {role: 0 for role in Role}
        self._audit_seq: int = 0
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self._load_state()

    # principals
    def create_principal(
        self,
        role: Role,
        login_name: str,
        email: str,
        password_hash: str,
        *,
        display_name: str = "",
        profile: Optional[dict] = None,
        active: bool = True,
        now: Optional[datetime] = None,
    ) -> Principal:
        with self._data_lock:
            if self.principal_exists(role, login_name, email):
                raise ConstraintViolation(
                    "username or email already exists",
                    {"table": role.table, "fields": ["username", "email"]},
                )
            self._principal_seq[role] += 1
            created = now or utcnow()
            principal = Principal(
                id=self._principal_seq[role],
                role=role,
                login_name=login_name,
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                active=active,
                profile=dict(profile or {}),
                created_at=created,
                updated_at=created,
            )
            self.principals[role][principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal(self, role: Role, principal_id: int) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals[role].get(int(principal_id))
            return replace(principal) if principal else None

    def find_principal(
        self, role: Role, login: str, *, active_only: bool = True
    ) -> Optional[Principal]:
        needle = normalize_login(login)
        if not needle:
            return None
        with self._data_lock:
            for principal in self.principals[role].values():
                if active_only and not principal.active:
                    continue
                if needle in (
                    normalize_login(principal.login_name),
                    normalize_login(principal.email),
                ):
                    return replace(principal)
            return None

    def principal_exists(self, role: Role, login_name: str, email: str) -> bool:
        names = {normalize_login(login_name), normalize_login(email)} - {""}
        with self._data_lock:
            return any(
                normalize_login(p.login_name) in names or normalize_login(p.email) in names
                for p in self.principals[role].values()
            )

    def list_principals(self, role: Role, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(
                self.principals[role].values(), key=lambda p: p.created_at, reverse=True
            )
            return [replace(p) for p in ordered[:limit]]

    def update_password(
        self, role: Role, principal_id: int, password_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            principal = self.principals[role].get(int(principal_id))
            if not principal:
                return False
            principal.password_hash = password_hash
            principal.updated_at = now or utcnow()
            self._persist_state()
            return True

    def touch_principal(
        self, role: Role, principal_id: int, *, now: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            principal = self.principals[role].get(int(principal_id))
            if not principal:
                return
            principal.updated_at = now or utcnow()
            self._persist_state()

    def set_principal_active(
        self, role: Role, principal_id: int, active: bool, *, now: Optional[datetime] = None
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals[role].get(int(principal_id))
            if not principal:
                return None
            principal.active = active
            principal.updated_at = now or utcnow()
            self._persist_state()
            return replace(principal)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.token in self.sessions:
                raise ConstraintViolation("session token collision", {"table": "user_sessions"})
            if int(session.principal_id) not in self.principals[session.role]:
                raise ConstraintViolation(
                    "session principal missing",
                    {"role": session.role.value, "principal_id": session.principal_id},
                )
            self.sessions[session.token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            return replace(sess) if sess else None

    def touch_session(self, token: str, *, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess or not sess.active:
                return False
            sess.last_activity_at = now or utcnow()
            self._persist_state()
            return True

    def end_session(
        self, token: str, reason: SessionEndReason, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess or not sess.active:
                return False
            self._mark_inactive(sess, reason, now or utcnow())
            self._persist_state()
            return True

    def end_principal_sessions(
        self,
        role: Role,
        principal_id: int,
        reason: SessionEndReason,
        *,
        now: Optional[datetime] = None,
        except_token: Optional[str] = None,
    ) -> int:
        ended_at = now or utcnow()
        with self._data_lock:
            ended = 0
            for sess in self.sessions.values():
                if (
                    sess.active
                    and sess.role == role
                    and sess.principal_id == int(principal_id)
                    and sess.token != except_token
                ):
                    self._mark_inactive(sess, reason, ended_at)
                    ended += 1
            if ended:
                self._persist_state()
            return ended

    def list_sessions(
        self, role: Role, principal_id: int, *, active_only: bool = True
    ) -> List[Session]:
        with self._data_lock:
            matches = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.role == role
                and sess.principal_id == int(principal_id)
                and (sess.active or not active_only)
            ]
        return sorted(matches, key=lambda s: s.last_activity_at, reverse=True)

    def expire_idle_sessions(
        self, cutoff: datetime, *, now: Optional[datetime] = None
    ) -> int:
        ended_at = now or utcnow()
        with self._data_lock:
            expired = 0
            for sess in self.sessions.values():
                if sess.active and sess.last_activity_at < cutoff:
                    self._mark_inactive(sess, SessionEndReason.EXPIRED, ended_at)
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    def purge_inactive_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.sessions.items()
                if not sess.active and (sess.ended_at or sess.last_activity_at) < before
            ]
            for token in stale:
                self.sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    @staticmethod
    def _mark_inactive(sess: Session, reason: SessionEndReason, now: datetime) -> None:
        sess.active = False
        sess.ended_at = now
        sess.end_reason = reason

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self._audit_seq += 1
            stored = replace(event, id=self._audit_seq)
            self.audit_events.append(stored)
            self._persist_state()
            return replace(stored)

    def list_audit_events(
        self, *, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                replace(evt)
                for evt in reversed(self.audit_events)
                if action is None or evt.action == action
            ]
        return events[:limit]

    # snapshot
    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "identity_store.json"

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "principals": {
                role.value: [principal_to_row(p) for p in partition.values()]
                for role, partition in self.principals.items()
            },
            "sessions": [session_to_row(s) for s in self.sessions.values()],
            "audit_events": [audit_to_row(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreError(
                f"failed to persist in-memory state: {exc}", operation="persist_state"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw_role, rows in data.get("principals", {}).items():
            role = Role(raw_role)
            partition = {}
            for row in rows:
                principal = principal_from_row(role, row)
                partition[principal.id] = principal
            self.principals[role] = partition
            self._principal_seq[role] = max(partition, default=0)
        self.sessions = {
            row["session_id"]: session_from_row(row) for row in data.get("sessions", [])
        }
        self.audit_events = [audit_from_row(row) for row in data.get("audit_events", [])]
        self._audit_seq = max((evt.id or 0 for evt in self.audit_events), default=0)
        self.logger.info(
            "memory_store_state_loaded",
            sessions=len(self.sessions),
            audit_events=len(self.audit_events),
        )
        return True
