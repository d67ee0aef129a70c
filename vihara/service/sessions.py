"""Server-side session lifecycle.

A session moves ``Created -> Active -> ended`` where the ending is one of the
:class:`SessionEndReason` members. Rows are only ever soft-inactivated here;
hard deletion happens in bulk through :meth:`SessionManager.purge_inactive`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from vihara.logging import get_logger, token_hint
from vihara.service.audit import AuditSink
from vihara.service.errors import (
    AccountDeactivatedError,
    SessionExpiredError,
    SessionInvalidError,
)
from vihara.storage.common import SESSIONS_TABLE
from vihara.storage.errors import StoreError
from vihara.storage.models import Principal, Role, Session, SessionEndReason

logger = get_logger(__name__)


class SessionStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def touch_session(self, token: str, *, now: Optional[datetime] = None) -> bool: ...

    def end_session(
        self, token: str, reason: SessionEndReason, *, now: Optional[datetime] = None
    ) -> bool: ...

    def end_principal_sessions(
        self,
        role: Role,
        principal_id: int,
        reason: SessionEndReason,
        *,
        now: Optional[datetime] = None,
        except_token: Optional[str] = None,
    ) -> int: ...

    def list_sessions(
        self, role: Role, principal_id: int, *, active_only: bool = True
    ) -> List[Session]: ...

    def expire_idle_sessions(
        self, cutoff: datetime, *, now: Optional[datetime] = None
    ) -> int: ...

    def purge_inactive_sessions(self, before: datetime) -> int: ...

    def get_principal(self, role: Role, principal_id: int) -> Optional[Principal]: ...


@dataclass(frozen=True)
class IdentityContext:
    """Who is calling, derived from the session row for one request only."""

    is_authenticated: bool
    role: Optional[Role] = None
    principal_id: Optional[int] = None
    remaining_seconds: int = 0
    token: Optional[str] = None
    login_name: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "IdentityContext":
        return cls(is_authenticated=False)


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        audit: AuditSink,
        *,
        timeout_seconds: int = 3600,
        max_concurrent_sessions: int = 0,
        retention_days: int = 30,
    ) -> None:
        self.store = store
        self.audit = audit
        self.timeout_seconds = timeout_seconds
        self.max_concurrent_sessions = max_concurrent_sessions
        self.retention_days = retention_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(
        self,
        principal: Principal,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self._now()
        session = Session.new(
            principal.id, principal.role, now=now, ip_addr=ip_addr, user_agent=user_agent
        )
        self.store.insert_session(session)
        logger.info(
            "session_created",
            role=principal.role.value,
            principal_id=principal.id,
            session=token_hint(session.token),
        )
        self.audit.record(
            "session_created",
            actor_role=principal.role,
            actor_id=principal.id,
            entity=SESSIONS_TABLE,
            record_id=token_hint(session.token),
            new_values={"login_time": now.isoformat()},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        if self.max_concurrent_sessions > 0:
            self._enforce_concurrency_limit(principal, session.token, now)
        return session

    def _enforce_concurrency_limit(
        self, principal: Principal, new_token: str, now: datetime
    ) -> None:
        others = [
            sess
            for sess in self.store.list_sessions(principal.role, principal.id)
            if sess.token != new_token
        ]
        allowed_others = self.max_concurrent_sessions - 1
        # list_sessions is ordered by most recent activity, so the tail is the oldest
        for sess in others[allowed_others:]:
            self._end(sess, SessionEndReason.SUPERSEDED, now)

    def validate(
        self,
        token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IdentityContext:
        """Resolve ``token`` to an identity, refreshing its activity.

        A missing token yields an anonymous context. A token that cannot be
        honoured raises a :class:`SessionInvalidError` (or one of its
        subclasses); storage failures are treated the same way.
        """
        if not token:
            return IdentityContext.anonymous()
        try:
            return self._validate(token, ip_addr=ip_addr, user_agent=user_agent)
        except StoreError as exc:
            logger.error(
                "session_validation_store_error",
                session=token_hint(token),
                operation=exc.operation,
                error=str(exc),
            )
            raise SessionInvalidError() from exc

    def _validate(
        self, token: str, *, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> IdentityContext:
        sess = self.store.get_session(token)
        if not sess or not sess.active:
            logger.info("session_invalid", session=token_hint(token))
            raise SessionInvalidError()

        now = self._now()
        if sess.idle_seconds(now) > self.timeout_seconds:
            self._end(sess, SessionEndReason.EXPIRED, now, ip_addr=ip_addr, user_agent=user_agent)
            raise SessionExpiredError()

        principal = self.store.get_principal(sess.role, sess.principal_id)
        if not principal or not principal.active:
            self._end(
                sess, SessionEndReason.DEACTIVATED, now, ip_addr=ip_addr, user_agent=user_agent
            )
            raise AccountDeactivatedError()

        if not self.store.touch_session(token, now=now):
            # ended by a concurrent logout, sweep or termination
            raise SessionInvalidError()

        return IdentityContext(
            is_authenticated=True,
            role=sess.role,
            principal_id=sess.principal_id,
            remaining_seconds=self.timeout_seconds,
            token=token,
            login_name=principal.login_name,
            display_name=principal.display_name,
        )

    def peek(self, token: Optional[str]) -> Optional[Session]:
        """Return the active session row for ``token`` without touching it."""
        if not token:
            return None
        try:
            sess = self.store.get_session(token)
        except StoreError:
            logger.warning("session_peek_store_error", session=token_hint(token))
            return None
        if not sess or not sess.active:
            return None
        return sess

    def peek_identity(self, token: Optional[str]) -> IdentityContext:
        """Resolve ``token`` like :meth:`validate` but without refreshing activity.

        Unusable sessions yield an anonymous context instead of raising. A
        session that has idled out or whose principal is no longer active is
        still ended, so the answer matches what ``validate`` would decide.
        """
        if not token:
            return IdentityContext.anonymous()
        try:
            sess = self.store.get_session(token)
            if not sess or not sess.active:
                return IdentityContext.anonymous()

            now = self._now()
            idle = sess.idle_seconds(now)
            if idle > self.timeout_seconds:
                self._end(sess, SessionEndReason.EXPIRED, now)
                return IdentityContext.anonymous()

            principal = self.store.get_principal(sess.role, sess.principal_id)
            if not principal or not principal.active:
                self._end(sess, SessionEndReason.DEACTIVATED, now)
                return IdentityContext.anonymous()
        except StoreError as exc:
            logger.warning(
                "session_peek_store_error",
                session=token_hint(token),
                operation=exc.operation,
            )
            return IdentityContext.anonymous()

        return IdentityContext(
            is_authenticated=True,
            role=sess.role,
            principal_id=sess.principal_id,
            remaining_seconds=max(0, int(self.timeout_seconds - idle)),
            token=token,
            login_name=principal.login_name,
            display_name=principal.display_name,
        )

    def remaining_time(self, token: Optional[str]) -> int:
        """Seconds left before the session idles out. Never refreshes activity."""
        sess = self.peek(token)
        if sess is None:
            return 0
        return max(0, int(self.timeout_seconds - sess.idle_seconds(self._now())))

    def terminate(
        self,
        token: str,
        *,
        reason: SessionEndReason = SessionEndReason.ADMIN_TERMINATED,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Mark one session inactive. Returns False when it was already inactive."""
        sess = self.store.get_session(token)
        if not sess or not sess.active:
            return False
        return self._end(sess, reason, self._now(), ip_addr=ip_addr, user_agent=user_agent)

    def terminate_others(
        self,
        principal_id: int,
        role: Role,
        keep_token: Optional[str],
        *,
        reason: SessionEndReason = SessionEndReason.LOGGED_OUT,
    ) -> int:
        """End every active session of the principal except ``keep_token``.

        With ``keep_token=None`` all of the principal's sessions are ended.
        """
        ended = self.store.end_principal_sessions(
            role, principal_id, reason, now=self._now(), except_token=keep_token
        )
        if ended:
            logger.info(
                "sessions_terminated",
                role=role.value,
                principal_id=principal_id,
                count=ended,
                reason=reason.value,
                kept=token_hint(keep_token),
            )
            self.audit.record(
                "session_destroyed",
                actor_role=role,
                actor_id=principal_id,
                entity=SESSIONS_TABLE,
                new_values={"reason": reason.value, "count": ended},
            )
        return ended

    def list_sessions(self, principal_id: int, role: Role) -> List[Session]:
        return self.store.list_sessions(role, principal_id)

    def count_active_sessions(self, principal_id: int, role: Role) -> int:
        return len(self.store.list_sessions(role, principal_id))

    def sweep_expired(self) -> int:
        now = self._now()
        cutoff = now - timedelta(seconds=self.timeout_seconds)
        expired = self.store.expire_idle_sessions(cutoff, now=now)
        if expired:
            logger.info("sessions_swept", expired=expired, cutoff=cutoff.isoformat())
        return expired

    def purge_inactive(self) -> int:
        if self.retention_days <= 0:
            return 0
        before = self._now() - timedelta(days=self.retention_days)
        purged = self.store.purge_inactive_sessions(before)
        if purged:
            logger.info("sessions_purged", purged=purged, before=before.isoformat())
        return purged

    def _end(
        self,
        sess: Session,
        reason: SessionEndReason,
        now: datetime,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        ended = self.store.end_session(sess.token, reason, now=now)
        if not ended:
            return False
        logger.info(
            "session_ended",
            session=token_hint(sess.token),
            role=sess.role.value,
            principal_id=sess.principal_id,
            reason=reason.value,
        )
        self.audit.record(
            "session_destroyed",
            actor_role=sess.role,
            actor_id=sess.principal_id,
            entity=SESSIONS_TABLE,
            record_id=token_hint(sess.token),
            new_values={"reason": reason.value},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return True
