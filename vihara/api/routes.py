from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from vihara.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutOthersResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PrincipalActiveRequest,
    PrincipalResponse,
    RegisterRequest,
    RegisterResponse,
    SessionExtendResponse,
    SessionInfo,
    SessionListResponse,
    SessionStatusResponse,
)
from vihara.config import Settings
from vihara.logging import get_logger, token_hint
from vihara.service.auth import parse_role
from vihara.service.errors import PrincipalNotFoundError
from vihara.service.runtime import get_runtime
from vihara.service.sessions import IdentityContext
from vihara.storage.common import SESSIONS_TABLE
from vihara.storage.models import Principal, Role, Session, SessionEndReason

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_SESSION_TOKEN_LENGTH = 128


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    ip_addr = request.client.host if request.client else None
    return ip_addr, request.headers.get("user-agent")


def get_session_token(
    request: Request,
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> Optional[str]:
    """Session token from the ``session_id`` header, else the session cookie."""
    runtime = get_runtime()
    token = session_id or request.cookies.get(runtime.settings.session_cookie_name)
    if token and len(token) > MAX_SESSION_TOKEN_LENGTH:
        raise _http_error("unauthorized", "Invalid session", status_code=401)
    return token or None


async def get_identity(
    request: Request, token: Optional[str] = Depends(get_session_token)
) -> IdentityContext:
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    return runtime.sessions.validate(token, ip_addr=ip_addr, user_agent=user_agent)


async def get_user(ctx: IdentityContext = Depends(get_identity)) -> IdentityContext:
    return get_runtime().access.enforce(ctx)


async def get_admin_user(ctx: IdentityContext = Depends(get_identity)) -> IdentityContext:
    return get_runtime().access.enforce(ctx, Role.ADMIN)


def _apply_session_cookie(response: Response, token: str, settings: Settings) -> None:
    # No expiry: idle timeout is enforced server-side on every request
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _session_info(
    sess: Session, *, current_token: Optional[str] = None, include_token: bool = False
) -> SessionInfo:
    return SessionInfo(
        token_hint=token_hint(sess.token) or "",
        session_id=sess.token if include_token else None,
        role=sess.role.value,
        principal_id=sess.principal_id,
        login_time=sess.login_at,
        last_activity=sess.last_activity_at,
        ip_address=sess.ip_addr,
        user_agent=sess.user_agent,
        current=current_token is not None and sess.token == current_token,
    )


def _principal_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        role=principal.role.value,
        username=principal.login_name,
        email=principal.email,
        full_name=principal.display_name,
        is_active=principal.active,
        created_at=principal.created_at,
        updated_at=principal.updated_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate against one role's principals and open a session.

    Raises:
        400: If a field is missing or the role is unknown
        401: If the credentials are rejected
    """
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    result = await asyncio.to_thread(
        runtime.auth.login,
        body.username,
        body.password,
        body.role,
        ip_addr=ip_addr,
        user_agent=user_agent,
    )
    _apply_session_cookie(response, result.session.token, runtime.settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            principal_id=result.principal.id,
            role=result.principal.role.value,
            login_name=result.principal.login_name,
            display_name=result.principal.display_name,
            session_id=result.session.token,
            remaining_time=result.context.remaining_seconds,
            redirect=result.redirect,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Self-register a donator account. Does not log the new account in."""
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    fields = body.model_dump(exclude_none=True)
    principal_id = await asyncio.to_thread(
        runtime.auth.register_donator, fields, ip_addr=ip_addr, user_agent=user_agent
    )
    return Envelope(status="ok", data=RegisterResponse(principal_id=principal_id))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    token: Optional[str] = Depends(get_session_token),
):
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    runtime.auth.logout(token, ip_addr=ip_addr, user_agent=user_agent)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Logged out", "redirect": "/login"})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: IdentityContext = Depends(get_user),
):
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    ended = await asyncio.to_thread(
        runtime.auth.change_password,
        principal.principal_id,
        principal.role,
        body.current_password or "",
        body.new_password or "",
        keep_token=principal.token if body.logout_other_sessions else None,
        ip_addr=ip_addr,
        user_agent=user_agent,
    )
    return Envelope(status="ok", data=PasswordChangeResponse(sessions_terminated=ended))


@router.get("/session", response_model=Envelope, tags=["session"])
async def session_status(token: Optional[str] = Depends(get_session_token)):
    """Report whether the caller's session is alive. Does not extend it."""
    runtime = get_runtime()
    ctx = await asyncio.to_thread(runtime.sessions.peek_identity, token)
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            valid=ctx.is_authenticated,
            remaining_time=ctx.remaining_seconds,
            role=ctx.role.value if ctx.role else None,
        ),
    )


@router.post("/session/extend", response_model=Envelope, tags=["session"])
async def extend_session(principal: IdentityContext = Depends(get_user)):
    # validation in get_identity already refreshed the activity timestamp
    return Envelope(
        status="ok",
        data=SessionExtendResponse(
            success=True,
            message="Session extended",
            remaining_time=principal.remaining_seconds,
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["session"])
async def list_my_sessions(principal: IdentityContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_sessions(principal.principal_id, principal.role)
    items = [_session_info(sess, current_token=principal.token) for sess in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items, count=len(items)))


@router.post("/sessions/logout-others", response_model=Envelope, tags=["session"])
async def logout_other_sessions(principal: IdentityContext = Depends(get_user)):
    runtime = get_runtime()
    ended = runtime.sessions.terminate_others(
        principal.principal_id, principal.role, principal.token
    )
    return Envelope(status="ok", data=LogoutOthersResponse(sessions_terminated=ended))


@router.get(
    "/admin/principals/{role}/{principal_id}/sessions",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_list_sessions(
    role: str = Path(..., max_length=16),
    principal_id: int = Path(..., ge=1),
    admin: IdentityContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    target = parse_role(role)
    if runtime.store.get_principal(target, principal_id) is None:
        raise PrincipalNotFoundError()
    sessions = runtime.sessions.list_sessions(principal_id, target)
    items = [
        _session_info(sess, current_token=admin.token, include_token=True) for sess in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items, count=len(items)))


@router.delete("/admin/sessions/{token}", response_model=Envelope, tags=["admin"])
async def admin_terminate_session(
    request: Request,
    token: str = Path(..., max_length=MAX_SESSION_TOKEN_LENGTH),
    admin: IdentityContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    ip_addr, user_agent = _client_meta(request)
    ended = runtime.sessions.terminate(
        token,
        reason=SessionEndReason.ADMIN_TERMINATED,
        ip_addr=ip_addr,
        user_agent=user_agent,
    )
    runtime.audit.record(
        "session_terminated",
        actor_role=admin.role,
        actor_id=admin.principal_id,
        entity=SESSIONS_TABLE,
        record_id=token_hint(token),
        new_values={"terminated": ended},
        ip_addr=ip_addr,
        user_agent=user_agent,
    )
    logger.info(
        "admin_session_terminated",
        admin_id=admin.principal_id,
        session=token_hint(token),
        terminated=ended,
    )
    return Envelope(status="ok", data={"terminated": ended})


@router.post(
    "/admin/principals/{role}/{principal_id}/active",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_set_principal_active(
    body: PrincipalActiveRequest,
    role: str = Path(..., max_length=16),
    principal_id: int = Path(..., ge=1),
    admin: IdentityContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    principal = runtime.auth.set_principal_active(
        role, principal_id, body.active, actor=admin
    )
    return Envelope(status="ok", data=_principal_response(principal))
