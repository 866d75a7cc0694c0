"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.clock import Clock, get_clock
from gatekeeper.core.database.engine import get_db
from gatekeeper.features.sessions.login_guard import LoginAttemptGuard, get_login_guard
from gatekeeper.features.sessions.manager import TOKEN_ERRORS, AuthContext, SessionManager
from gatekeeper.features.sessions.tokens import TokenService
from gatekeeper.features.users.credentials import DatabaseCredentialVerifier
from gatekeeper.features.users.models import User


security = HTTPBearer(auto_error=False)


def get_token_service(clock: Annotated[Clock, Depends(get_clock)]) -> TokenService:
    return TokenService(clock)


def get_session_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
    tokens: Annotated[TokenService, Depends(get_token_service)],
    guard: Annotated[LoginAttemptGuard, Depends(get_login_guard)],
) -> SessionManager:
    return SessionManager(db, clock, tokens, guard, DatabaseCredentialVerifier(db))


def unauthenticated() -> HTTPException:
    """The single outward response for every token failure."""
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_current_auth(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> AuthContext:
    """
    Validate the bearer token and its session.

    Invalid, expired and revoked tokens all produce the same 401; the
    session manager logs the actual cause.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise unauthenticated()
    try:
        context = await sessions.validate_access_token(credentials.credentials, get_client_ip(request))
    except TOKEN_ERRORS:
        raise unauthenticated()
    request.state.auth = context
    return context


async def get_current_user(
    context: Annotated[AuthContext, Depends(get_current_auth)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Get the current authenticated user.

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    user = await db.get(User, context.user_id)
    if user is None:
        raise unauthenticated()
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )
    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    Require admin privileges.

    Usage:
        @router.post("/users")
        async def create_user(admin: User = Depends(get_current_admin_user)):
            ...
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user
