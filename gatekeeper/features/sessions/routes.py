"""
Authentication routes: registration, login, refresh, logout and session management.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.core.database.engine import get_db
from gatekeeper.core.rate_limit import limiter
from gatekeeper.features.audit.service import audit_request
from gatekeeper.features.permissions.dependencies import require_permission
from gatekeeper.features.roles.dependencies import get_user_role_manager
from gatekeeper.features.sessions.manager import TOKEN_ERRORS, AuthContext, SessionManager
from gatekeeper.features.sessions.models import UserSession
from gatekeeper.features.sessions.schemas import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    RefreshRequest,
    RevokeAllRequest,
    SessionResponse,
    SessionStatistics,
    TokenResponse,
)
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.features.users.credentials import hash_password
from gatekeeper.features.users.dependencies import (
    get_client_ip,
    get_current_auth,
    get_session_manager,
    security,
    unauthenticated,
)
from gatekeeper.features.users.models import User
from gatekeeper.features.users.schemas import UserRegister, UserResponse


router = APIRouter(tags=["auth"])


# ============================================================================
# Register / login / refresh / logout
# ============================================================================

@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(config.REGISTER_RATE_LIMIT)
async def register(
    request: Request,
    body: UserRegister,
    db: Annotated[AsyncSession, Depends(get_db)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
):
    """Create an account. The new user is bound to the default role, if one is configured."""
    user = User(
        email=body.email,
        name=body.name,
        password_hash=hash_password(body.password),
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists"
        )
    await db.refresh(user)

    await bindings.assign_default_role(user.id)
    await audit_request(db, request, user.id, "register", "user", user.id, {"email": user.email})
    return user


@router.post("/login", response_model=LoginResponse)
@limiter.limit(config.LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    body: LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """
    Exchange e-mail and password for an access/refresh token pair.

    Repeated failures for the same client and identifier are locked out
    with 429 until the attempt window passes.
    """
    ip_address = get_client_ip(request)
    result = await sessions.login(
        body.email,
        body.password,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        location=body.location,
        remember_me=body.remember_me,
    )
    await audit_request(db, request, result.user.id, "login", "session", result.session.id)
    return LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        access_expires_at=result.tokens.access_expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
        session_id=result.session.id,
        user_id=result.user.id,
        roles=result.roles,
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    body: RefreshRequest,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Trade a refresh token for a new pair. Reusing a rotated refresh token revokes the session."""
    try:
        pair = await sessions.refresh(body.refresh_token, get_client_ip(request))
    except TOKEN_ERRORS:
        raise unauthenticated()
    return pair


@router.post("/logout")
async def logout(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    body: Optional[LogoutRequest] = None,
):
    """End the current session, or every session of the user with ``all_sessions``."""
    if credentials is None:
        raise unauthenticated()
    body = body or LogoutRequest()
    try:
        revoked = await sessions.logout(credentials.credentials, body.all_sessions)
    except TOKEN_ERRORS:
        raise unauthenticated()
    return {"message": "Logged out", "revoked_sessions": revoked}


# ============================================================================
# Sessions
# ============================================================================

@router.get("/sessions", response_model=list[SessionResponse])
async def list_my_sessions(
    context: Annotated[AuthContext, Depends(get_current_auth)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    include_inactive: bool = False,
):
    """Sessions of the caller, most recently active first."""
    rows = await sessions.get_user_sessions(context.user_id, include_inactive)
    return [
        SessionResponse.model_validate(row).model_copy(update={"is_current": row.id == context.session_id})
        for row in rows
    ]


@router.get("/sessions/current", response_model=SessionResponse)
async def get_current_session(
    context: Annotated[AuthContext, Depends(get_current_auth)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """The session the caller's access token belongs to."""
    session = await db.get(UserSession, context.session_id)
    if session is None:
        raise unauthenticated()
    return SessionResponse.model_validate(session).model_copy(update={"is_current": True})


@router.get("/sessions/statistics", response_model=SessionStatistics)
async def session_statistics(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    _user: Annotated[User, Depends(require_permission("sessions.read"))],
    user_id: Optional[str] = None,
):
    return await sessions.statistics(user_id)


@router.post("/sessions/revoke-all")
async def revoke_all_my_sessions(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthContext, Depends(get_current_auth)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    body: Optional[RevokeAllRequest] = None,
):
    """Revoke every session of the caller, keeping the current one unless asked otherwise."""
    body = body or RevokeAllRequest()
    keep = context.session_id if body.keep_current else None
    revoked = await sessions.revoke_all_sessions(context.user_id, except_session_id=keep, reason="revoke_all")
    await audit_request(db, request, context.user_id, "revoke_all", "session", details={"revoked": revoked})
    return {"revoked_sessions": revoked}


@router.post("/sessions/cleanup")
async def cleanup_sessions(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    _user: Annotated[User, Depends(require_permission("sessions.manage"))],
    purge_older_than_hours: Optional[int] = None,
):
    """Expire overdue sessions and optionally purge ended ones older than the given age."""
    return await sessions.cleanup_expired_sessions(purge_older_than_hours)


@router.delete("/sessions/{session_id}", response_model=SessionResponse)
async def revoke_my_session(
    session_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AuthContext, Depends(get_current_auth)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Revoke one of the caller's sessions."""
    session = await sessions.revoke_session(session_id, context.user_id, reason="user_revoked")
    await audit_request(db, request, context.user_id, "revoke", "session", session_id)
    return session


@router.delete("/users/{user_id}/sessions", status_code=status.HTTP_200_OK)
async def revoke_user_sessions(
    user_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    current_user: Annotated[User, Depends(require_permission("sessions.manage"))],
):
    """Force-logout every session of another user."""
    revoked = await sessions.revoke_all_sessions(user_id, reason="admin_revoked")
    await audit_request(db, request, current_user.id, "revoke_all", "session", user_id, {"revoked": revoked})
    return {"revoked_sessions": revoked}
