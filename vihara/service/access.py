from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from vihara.service.errors import NotAuthenticatedError, WrongRoleError
from vihara.service.sessions import IdentityContext
from vihara.storage.models import Role


class DenyReason(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    WRONG_ROLE = "wrong_role"


_DENY_MESSAGES = {
    DenyReason.NOT_AUTHENTICATED: "Please login to access this page",
    DenyReason.WRONG_ROLE: "Access denied for your role",
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenyReason] = None
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "AccessDecision":
        return cls(allowed=False, reason=reason, message=_DENY_MESSAGES[reason])


class AccessGate:
    """Role policy applied after session validation.

    ``require_role`` only reports a decision; turning a deny into a redirect
    or an error response belongs to the caller. ``enforce`` is the raising
    variant used by HTTP dependencies.
    """

    def require_login(self, ctx: IdentityContext) -> AccessDecision:
        if not ctx.is_authenticated:
            return AccessDecision.deny(DenyReason.NOT_AUTHENTICATED)
        return AccessDecision.allow()

    def require_role(self, ctx: IdentityContext, role: Role) -> AccessDecision:
        decision = self.require_login(ctx)
        if not decision.allowed:
            return decision
        if ctx.role != role:
            return AccessDecision.deny(DenyReason.WRONG_ROLE)
        return AccessDecision.allow()

    def enforce(self, ctx: IdentityContext, role: Optional[Role] = None) -> IdentityContext:
        decision = self.require_role(ctx, role) if role else self.require_login(ctx)
        if decision.allowed:
            return ctx
        if decision.reason == DenyReason.WRONG_ROLE:
            raise WrongRoleError()
        raise NotAuthenticatedError()
