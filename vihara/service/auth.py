from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from vihara.config import Settings
from vihara.logging import get_logger
from vihara.service.audit import AuditSink
from vihara.service.errors import (
    CurrentPasswordMismatchError,
    DuplicateIdentityError,
    InvalidCredentialsError,
    InvalidEmailError,
    InvalidRoleError,
    MissingFieldError,
    PrincipalNotFoundError,
    WeakPasswordError,
)
from vihara.service.sessions import IdentityContext, SessionManager
from vihara.storage.errors import ConstraintViolation
from vihara.storage.models import Principal, Role, Session, SessionEndReason

logger = get_logger(__name__)

# Only donators self-register; these must all be present and non-blank
REGISTRATION_REQUIRED_FIELDS = ("username", "email", "password", "full_name", "phone")
# Optional registration fields kept on the principal's profile
PROFILE_FIELDS = ("phone", "address", "organization", "preferred_contact", "is_anonymous")

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    if len(candidate) < 3 or len(candidate) > 254:
        return False
    local, sep, domain = candidate.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_role(value: "Role | str | None") -> Role:
    if _blank(value):
        raise MissingFieldError("role")
    try:
        return Role.parse(value)
    except ValueError as exc:
        raise InvalidRoleError() from exc


class CredentialStore(Protocol):
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
    ) -> Principal: ...

    def get_principal(self, role: Role, principal_id: int) -> Optional[Principal]: ...

    def find_principal(
        self, role: Role, login: str, *, active_only: bool = True
    ) -> Optional[Principal]: ...

    def principal_exists(self, role: Role, login_name: str, email: str) -> bool: ...

    def list_principals(self, role: Role, limit: int = 100) -> List[Principal]: ...

    def update_password(
        self, role: Role, principal_id: int, password_hash: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def touch_principal(
        self, role: Role, principal_id: int, *, now: Optional[datetime] = None
    ) -> None: ...

    def set_principal_active(
        self, role: Role, principal_id: int, active: bool, *, now: Optional[datetime] = None
    ) -> Optional[Principal]: ...

    def get_session(self, token: str) -> Optional[Session]: ...


@dataclass
class LoginResult:
    principal: Principal
    session: Session
    context: IdentityContext
    redirect: str


class AuthService:
    """Credential checks, self-registration, logout and password rotation."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        audit: AuditSink,
        settings: Settings,
    ) -> None:
        self.store: CredentialStore = store
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def password_min_length(self) -> int:
        return self.settings.password_min_length

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown logins cost the same as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_hex(16))
        self.verify_password(self._dummy_hash, password)

    def login(
        self,
        login_name: Optional[str],
        password: Optional[str],
        role: "Role | str | None",
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if _blank(login_name):
            raise MissingFieldError("username")
        if _blank(password):
            raise MissingFieldError("password")
        claimed_role = parse_role(role)
        login_name = str(login_name).strip()
        password = str(password)

        principal = self.store.find_principal(claimed_role, login_name, active_only=False)
        if principal is None:
            self._burn_verification(password)
            self._login_failed(claimed_role, login_name, "unknown_login", ip_addr, user_agent)
        if not self.verify_password(principal.password_hash, password):
            self._login_failed(claimed_role, login_name, "password_mismatch", ip_addr, user_agent)
        if not principal.active:
            self._login_failed(claimed_role, login_name, "inactive", ip_addr, user_agent)

        session = self.sessions.create_session(principal, ip_addr=ip_addr, user_agent=user_agent)
        self.store.touch_principal(claimed_role, principal.id, now=session.login_at)
        self.audit.record(
            "login_success",
            actor_role=claimed_role,
            actor_id=principal.id,
            entity=claimed_role.table,
            record_id=principal.id,
            new_values={"login": login_name},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("login_success", role=claimed_role.value, principal_id=principal.id)
        context = IdentityContext(
            is_authenticated=True,
            role=claimed_role,
            principal_id=principal.id,
            remaining_seconds=self.sessions.timeout_seconds,
            token=session.token,
            login_name=principal.login_name,
            display_name=principal.display_name,
        )
        return LoginResult(
            principal=principal,
            session=session,
            context=context,
            redirect=claimed_role.dashboard_path,
        )

    def _login_failed(
        self,
        role: Role,
        login_name: str,
        reason: str,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.audit.record(
            "login_failed",
            actor_role=role,
            actor_id=0,
            entity=role.table,
            new_values={"login": login_name, "reason": reason},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("login_failed", role=role.value, reason=reason)
        raise InvalidCredentialsError()

    def register_donator(
        self,
        fields: Mapping[str, Any],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Create a donator principal from a registration form.

        Checks run in a fixed order (required fields, uniqueness, email
        syntax, password length) so the first failing rule is the one
        reported. The audit event gets the submitted form with every
        password-like field removed.
        """
        for name in REGISTRATION_REQUIRED_FIELDS:
            if _blank(fields.get(name)):
                raise MissingFieldError(name)

        role = Role.DONATOR
        username = str(fields["username"]).strip()
        email = str(fields["email"]).strip()
        password = str(fields["password"])

        if self.store.principal_exists(role, username, email):
            self.logger.info("registration_duplicate", role=role.value)
            raise DuplicateIdentityError()
        if not is_valid_email(email):
            raise InvalidEmailError()
        if len(password) < self.password_min_length:
            raise WeakPasswordError(self.password_min_length)

        profile = {
            name: fields[name]
            for name in PROFILE_FIELDS
            if name in fields and not _blank(fields[name])
        }
        try:
            principal = self.store.create_principal(
                role,
                username,
                email,
                self.hash_password(password),
                display_name=str(fields["full_name"]).strip(),
                profile=profile,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration for the same identity
            raise DuplicateIdentityError() from exc

        self.audit.record(
            "registration",
            actor_role=role,
            actor_id=principal.id,
            entity=role.table,
            record_id=principal.id,
            new_values=dict(fields),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("registration_completed", role=role.value, principal_id=principal.id)
        return principal.id

    def create_principal(
        self,
        role: "Role | str",
        username: str,
        email: str,
        password: str,
        *,
        display_name: str = "",
        profile: Optional[dict] = None,
    ) -> Principal:
        """Provision a principal of any role (operator tooling, not self-service)."""
        target = parse_role(role)
        if _blank(username):
            raise MissingFieldError("username")
        if _blank(email):
            raise MissingFieldError("email")
        if _blank(password):
            raise MissingFieldError("password")
        if self.store.principal_exists(target, username.strip(), email.strip()):
            raise DuplicateIdentityError()
        if not is_valid_email(email):
            raise InvalidEmailError()
        if len(password) < self.password_min_length:
            raise WeakPasswordError(self.password_min_length)
        try:
            principal = self.store.create_principal(
                target,
                username.strip(),
                email.strip(),
                self.hash_password(password),
                display_name=display_name,
                profile=profile,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            raise DuplicateIdentityError() from exc
        self.audit.record(
            "principal_created",
            actor_role="system",
            entity=target.table,
            record_id=principal.id,
            new_values={"username": principal.login_name, "role": target.value},
        )
        return principal

    def logout(
        self,
        token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """End the session behind ``token``. Repeating it is a no-op."""
        if not token:
            return
        sess = self.store.get_session(token)
        if not sess or not sess.active:
            return
        ended = self.sessions.terminate(
            token, reason=SessionEndReason.LOGGED_OUT, ip_addr=ip_addr, user_agent=user_agent
        )
        if ended:
            self.audit.record(
                "logout",
                actor_role=sess.role,
                actor_id=sess.principal_id,
                entity=sess.role.table,
                record_id=sess.principal_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )

    def change_password(
        self,
        principal_id: int,
        role: "Role | str",
        current_password: str,
        new_password: str,
        *,
        keep_token: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Rotate a password after re-checking the current one.

        When ``keep_token`` is given, every other session of the principal is
        ended. Returns how many sessions were ended.
        """
        target = parse_role(role)
        principal = self.store.get_principal(target, principal_id)
        if principal is None:
            raise PrincipalNotFoundError()
        if not self.verify_password(principal.password_hash, current_password or ""):
            self.logger.info(
                "password_change_rejected", role=target.value, principal_id=principal_id
            )
            raise CurrentPasswordMismatchError()
        if len(new_password or "") < self.password_min_length:
            raise WeakPasswordError(self.password_min_length, label="New password")

        self.store.update_password(
            target, principal_id, self.hash_password(new_password), now=self._now()
        )
        ended = 0
        if keep_token:
            ended = self.sessions.terminate_others(principal_id, target, keep_token)
        self.audit.record(
            "password_changed",
            actor_role=target,
            actor_id=principal_id,
            entity=target.table,
            record_id=principal_id,
            new_values={"sessions_terminated": ended},
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.logger.info("password_changed", role=target.value, principal_id=principal_id)
        return ended

    def set_principal_active(
        self,
        role: "Role | str",
        principal_id: int,
        active: bool,
        *,
        actor: Optional[IdentityContext] = None,
    ) -> Principal:
        """Flip the soft ``active`` flag; deactivation also ends every session."""
        target = parse_role(role)
        before = self.store.get_principal(target, principal_id)
        if before is None:
            raise PrincipalNotFoundError()
        principal = self.store.set_principal_active(target, principal_id, active, now=self._now())
        if principal is None:
            raise PrincipalNotFoundError()
        ended = 0
        if not active:
            ended = self.sessions.terminate_others(
                principal_id, target, None, reason=SessionEndReason.DEACTIVATED
            )
        self.audit.record(
            "principal_activated" if active else "principal_deactivated",
            actor_role=actor.role if actor and actor.role else "system",
            actor_id=actor.principal_id if actor else 0,
            entity=target.table,
            record_id=principal_id,
            old_values={"is_active": before.active},
            new_values={"is_active": active, "sessions_terminated": ended},
        )
        return principal
