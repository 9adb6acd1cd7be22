from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Request, Response

from sessiongate.api.schemas import (
    AuthResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    SecurityEventResponse,
    SessionInfo,
    SessionResponse,
    SweepResponse,
)
from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.auth import browser_name
from sessiongate.service.cutoff import seconds_until
from sessiongate.service.errors import (
    AuthError,
    ForbiddenError,
    InfrastructureUnavailableError,
    MissingCredentialError,
    ValidationError,
)
from sessiongate.service.identity import role_allows
from sessiongate.service.runtime import get_runtime
from sessiongate.service.security_log import SecurityEventKind, as_utc
from sessiongate.service.verifier import AuthContext
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import DeviceInfo, Identity, Role, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_NO_STORE = "no-store, no-cache, must-revalidate, private"


def _device(request: Request, user_agent: Optional[str]) -> DeviceInfo:
    return DeviceInfo(
        user_agent=(user_agent or "")[:512],
        ip_address=request.client.host if request.client else "",
    )


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        role=identity.role.value,
        name=identity.name,
        username=identity.username,
        email=identity.email,
        permissions=sorted(identity.permissions),
    )


def _set_auth_cookies(
    response: Response,
    settings: Settings,
    *,
    access_token: str,
    refresh_token: Optional[str],
    session_expires_at: datetime,
) -> None:
    # Neither cookie outlives the session's daily cutoff
    session_seconds = seconds_until(session_expires_at, utcnow())
    response.set_cookie(
        settings.access_cookie_name,
        access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=min(settings.access_token_ttl_minutes * 60, session_seconds),
        path="/",
    )
    if refresh_token:
        response.set_cookie(
            settings.refresh_cookie_name,
            refresh_token,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            max_age=session_seconds,
            path="/",
        )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name, path="/", secure=settings.cookie_secure, httponly=True, samesite="strict"
        )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.access_cookie_name)
    token = runtime.auth.extract_token(authorization, cookie_token)
    if not token:
        raise MissingCredentialError("no access token presented")
    ctx = await runtime.auth.authenticate(authorization, cookie_token)
    if not ctx:
        raise AuthError("invalid session")
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not role_allows(principal.role, Role.ADMIN):
        raise ForbiddenError("admin access required")
    return principal


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with username and password; sets the access and refresh cookies.

    Raises:
        401: If credentials are invalid
        429: If too many failed attempts came from this client
        503: If the session store is unreachable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username, body.password, _device(request, user_agent)
    )
    if result is None:
        raise AuthError("invalid credentials")
    tokens = result.tokens
    _set_auth_cookies(
        response,
        runtime.settings,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        session_expires_at=tokens.session.expires_at,
    )
    response.headers["Cache-Control"] = _NO_STORE
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_identity_response(result.identity),
            session_id=tokens.session_id,
            session_expires_at=tokens.session.expires_at,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    user_agent: Optional[str] = Header(None),
):
    """Exchange a refresh token (body or cookie) for a new access token."""
    runtime = get_runtime()
    settings = runtime.settings
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        settings.refresh_cookie_name
    )
    if not refresh_token:
        raise MissingCredentialError("no refresh token presented")
    rotated = await runtime.auth.refresh(refresh_token, _device(request, user_agent))
    if rotated is None:
        raise AuthError("refresh denied")
    _set_auth_cookies(
        response,
        settings,
        access_token=rotated.access_token,
        refresh_token=rotated.refresh_token,
        session_expires_at=rotated.expires_at,
    )
    response.headers["Cache-Control"] = _NO_STORE
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_identity_response(rotated.identity),
            session_id=rotated.session_id,
            session_expires_at=rotated.expires_at,
            access_token=rotated.access_token,
            refresh_token=rotated.refresh_token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
):
    """End the current session, or every session with ``logout_all_devices``.

    Cookies are always cleared, even when the presented tokens are already invalid.
    """
    runtime = get_runtime()
    settings = runtime.settings
    body = body or LogoutRequest()
    access_token = runtime.auth.extract_token(
        authorization, request.cookies.get(settings.access_cookie_name)
    )
    result = await runtime.auth.logout(
        access_token,
        request.cookies.get(settings.refresh_cookie_name),
        all_devices=body.logout_all_devices,
        reason=body.reason,
        device=_device(request, user_agent),
    )
    _clear_auth_cookies(response, settings)
    response.headers["Cache-Control"] = _NO_STORE
    return Envelope(
        status="ok",
        data=LogoutResponse(
            message=(
                "logged out from all devices" if body.logout_all_devices else "logged out"
            ),
            all_devices=body.logout_all_devices,
            sessions_revoked=result.sessions_revoked,
            failures=result.failures,
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    response: Response, principal: AuthContext = Depends(get_user)
):
    response.headers["Cache-Control"] = _NO_STORE
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=_identity_response(principal.identity),
            session_id=principal.session_id,
            token_expires_at=principal.expires_at,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    """List the caller's live sessions, most recently used first."""
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.role, principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionInfo(
                id=sess.id,
                created_at=sess.created_at,
                last_used_at=sess.last_used_at,
                expires_at=sess.expires_at,
                ip_address=sess.ip_address,
                user_agent=sess.user_agent,
                browser=browser_name(sess.user_agent),
                current=sess.id == principal.session_id,
            )
            for sess in sessions
        ],
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_user),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.auth.revoke_own_session(
        principal, session_id, _device(request, user_agent)
    )
    return Envelope(status="ok", data={"message": "session revoked", "session_id": session_id})


@router.get("/security-logs/{user_id}", response_model=Envelope, tags=["admin"])
async def security_logs(
    user_id: str = Path(..., min_length=1, max_length=128),
    limit: int = Query(20, ge=1, le=100),
    role: Role = Query(Role.USER),
    kind: Optional[List[SecurityEventKind]] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(get_admin_user),
):
    """Recent audit events of one identity, optionally narrowed by kind and time."""
    since, until = as_utc(since), as_utc(until)
    if since is not None and until is not None and since > until:
        raise ValidationError("since must not be after until")
    runtime = get_runtime()
    events = await runtime.auth.recent_security_events(
        role, user_id, limit, kinds=kind, since=since, until=until
    )
    return Envelope(
        status="ok",
        data=[
            SecurityEventResponse(
                id=event.id,
                kind=event.kind,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                session_id=event.session_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                timestamp=event.timestamp,
                metadata=event.metadata,
            )
            for event in events
        ],
    )


@router.post("/internal/sweep", response_model=Envelope, tags=["admin"])
async def run_sweep(principal: AuthContext = Depends(get_admin_user)):
    """Remove session records past their cutoff; normally driven by a scheduler."""
    runtime = get_runtime()
    try:
        result = await runtime.sweep.run()
    except StoreUnavailableError as exc:
        raise InfrastructureUnavailableError("session store unavailable") from exc
    logger.info("session_sweep_triggered", actor_id=principal.user_id)
    return Envelope(
        status="ok",
        data=SweepResponse(
            scanned=result.scanned, removed=result.removed, failed=result.failed
        ),
    )
