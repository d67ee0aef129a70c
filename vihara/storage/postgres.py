from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from importlib import resources
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vihara.logging import get_logger
from vihara.storage.common import (
    AUDIT_TABLE,
    SESSIONS_TABLE,
    audit_from_row,
    normalize_login,
    principal_from_row,
    session_from_row,
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


class PostgresStore:
    """Postgres-backed credential, session and audit store.

    Every session mutation is a single-row (or single-statement bulk) UPDATE
    keyed by token or principal, so concurrent requests never need a
    cross-row transaction.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if verify_schema:
            self._verify_required_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed", operation=operation) from exc

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self) -> None:
        """Create the credential, session and audit tables if missing."""

        ddl = resources.files("vihara.storage").joinpath("schema.sql").read_text()
        with self._connect("apply_schema") as conn:
            conn.execute(ddl)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        required_tables = [role.table for role in Role] + [SESSIONS_TABLE, AUDIT_TABLE]
        with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_admin.py --init-schema first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

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
        created = now or utcnow()
        try:
            with self._connect("create_principal") as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO {role.table} (username, email, password, full_name, profile, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        login_name,
                        email,
                        password_hash,
                        display_name,
                        json.dumps(profile) if profile else None,
                        active,
                        created,
                        created,
                    ),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "username or email already exists",
                {"table": role.table, "fields": ["username", "email"]},
            ) from exc
        return principal_from_row(role, row)

    def get_principal(self, role: Role, principal_id: int) -> Optional[Principal]:
        with self._connect("get_principal") as conn:
            row = conn.execute(
                f"SELECT * FROM {role.table} WHERE {role.id_field} = %s",
                (int(principal_id),),
            ).fetchone()
        if not row:
            return None
        return principal_from_row(role, row)

    def find_principal(
        self, role: Role, login: str, *, active_only: bool = True
    ) -> Optional[Principal]:
        needle = normalize_login(login)
        if not needle:
            return None
        query = f"SELECT * FROM {role.table} WHERE (LOWER(username) = %s OR LOWER(email) = %s)"
        if active_only:
            query += " AND is_active = TRUE"
        with self._connect("find_principal") as conn:
            row = conn.execute(query + " LIMIT 1", (needle, needle)).fetchone()
        if not row:
            return None
        return principal_from_row(role, row)

    def principal_exists(self, role: Role, login_name: str, email: str) -> bool:
        with self._connect("principal_exists") as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS count FROM {role.table}
                WHERE LOWER(username) IN (%s, %s) OR LOWER(email) IN (%s, %s)
                """,
                (
                    normalize_login(login_name),
                    normalize_login(email),
                    normalize_login(login_name),
                    normalize_login(email),
                ),
            ).fetchone()
        return bool(row and row["count"])

    def list_principals(self, role: Role, limit: int = 100) -> List[Principal]:
        with self._connect("list_principals") as conn:
            rows = conn.execute(
                f"SELECT * FROM {role.table} ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [principal_from_row(role, row) for row in rows]

    def update_password(
        self, role: Role, principal_id: int, password_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect("update_password") as conn:
            result = conn.execute(
                f"UPDATE {role.table} SET password = %s, updated_at = %s WHERE {role.id_field} = %s",
                (password_hash, now or utcnow(), int(principal_id)),
            )
            return result.rowcount > 0

    def touch_principal(
        self, role: Role, principal_id: int, *, now: Optional[datetime] = None
    ) -> None:
        with self._connect("touch_principal") as conn:
            conn.execute(
                f"UPDATE {role.table} SET updated_at = %s WHERE {role.id_field} = %s",
                (now or utcnow(), int(principal_id)),
            )

    def set_principal_active(
        self, role: Role, principal_id: int, active: bool, *, now: Optional[datetime] = None
    ) -> Optional[Principal]:
        with self._connect("set_principal_active") as conn:
            row = conn.execute(
                f"UPDATE {role.table} SET is_active = %s, updated_at = %s WHERE {role.id_field} = %s RETURNING *",
                (active, now or utcnow(), int(principal_id)),
            ).fetchone()
        if not row:
            return None
        return principal_from_row(role, row)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._connect("insert_session") as conn:
            conn.execute(
                f"""
                INSERT INTO {SESSIONS_TABLE} (session_id, user_type, user_id, ip_address, user_agent, login_time, last_activity, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE)
                """,
                (
                    session.token,
                    session.role.value,
                    int(session.principal_id),
                    session.ip_addr or "",
                    session.user_agent or "",
                    session.login_at,
                    session.last_activity_at,
                ),
            )
        return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                f"SELECT * FROM {SESSIONS_TABLE} WHERE session_id = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return session_from_row(row)

    def touch_session(self, token: str, *, now: Optional[datetime] = None) -> bool:
        with self._connect("touch_session") as conn:
            result = conn.execute(
                f"UPDATE {SESSIONS_TABLE} SET last_activity = %s WHERE session_id = %s AND is_active = TRUE",
                (now or utcnow(), token),
            )
            return result.rowcount > 0

    def end_session(
        self, token: str, reason: SessionEndReason, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect("end_session") as conn:
            result = conn.execute(
                f"""
                UPDATE {SESSIONS_TABLE}
                SET is_active = FALSE, ended_at = %s, end_reason = %s
                WHERE session_id = %s AND is_active = TRUE
                """,
                (now or utcnow(), reason.value, token),
            )
            return result.rowcount > 0

    def end_principal_sessions(
        self,
        role: Role,
        principal_id: int,
        reason: SessionEndReason,
        *,
        now: Optional[datetime] = None,
        except_token: Optional[str] = None,
    ) -> int:
        with self._connect("end_principal_sessions") as conn:
            result = conn.execute(
                f"""
                UPDATE {SESSIONS_TABLE}
                SET is_active = FALSE, ended_at = %s, end_reason = %s
                WHERE user_id = %s AND user_type = %s AND session_id <> %s AND is_active = TRUE
                """,
                (now or utcnow(), reason.value, int(principal_id), role.value, except_token or ""),
            )
            return max(result.rowcount, 0)

    def list_sessions(
        self, role: Role, principal_id: int, *, active_only: bool = True
    ) -> List[Session]:
        query = f"SELECT * FROM {SESSIONS_TABLE} WHERE user_id = %s AND user_type = %s"
        if active_only:
            query += " AND is_active = TRUE"
        with self._connect("list_sessions") as conn:
            rows = conn.execute(
                query + " ORDER BY last_activity DESC", (int(principal_id), role.value)
            ).fetchall()
        return [session_from_row(row) for row in rows]

    def expire_idle_sessions(
        self, cutoff: datetime, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect("expire_idle_sessions") as conn:
            result = conn.execute(
                f"""
                UPDATE {SESSIONS_TABLE}
                SET is_active = FALSE, ended_at = %s, end_reason = %s
                WHERE is_active = TRUE AND last_activity < %s
                """,
                (now or utcnow(), SessionEndReason.EXPIRED.value, cutoff),
            )
            return max(result.rowcount, 0)

    def purge_inactive_sessions(self, before: datetime) -> int:
        with self._connect("purge_inactive_sessions") as conn:
            result = conn.execute(
                f"""
                DELETE FROM {SESSIONS_TABLE}
                WHERE is_active = FALSE AND COALESCE(ended_at, last_activity) < %s
                """,
                (before,),
            )
            return max(result.rowcount, 0)

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect("append_audit_event") as conn:
            row = conn.execute(
                f"""
                INSERT INTO {AUDIT_TABLE} (user_type, user_id, action, table_affected, record_id, old_values, new_values, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING log_id
                """,
                (
                    event.actor_role,
                    event.actor_id,
                    event.action,
                    event.entity,
                    event.record_id,
                    json.dumps(event.old_values) if event.old_values is not None else None,
                    json.dumps(event.new_values) if event.new_values is not None else None,
                    event.ip_addr or "",
                    event.user_agent or "",
                    event.created_at,
                ),
            ).fetchone()
        event.id = row["log_id"] if row else None
        return event

    def list_audit_events(
        self, *, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect("list_audit_events") as conn:
            if action:
                rows = conn.execute(
                    f"SELECT * FROM {AUDIT_TABLE} WHERE action = %s ORDER BY log_id DESC LIMIT %s",
                    (action, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM {AUDIT_TABLE} ORDER BY log_id DESC LIMIT %s", (limit,)
                ).fetchall()
        return [audit_from_row(row) for row in rows]
