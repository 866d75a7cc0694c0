"""
Permission-based authorization dependencies.

Decisions are live by default: the resolver reads the user's current bindings
and grants on every request. With AUTHZ_MODE=snapshot the permission names
embedded in the access token at issuance are trusted instead, and stay stale
until the token expires.
"""
from typing import Annotated, Iterable
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.core.clock import Clock, get_clock
from gatekeeper.core.database.engine import get_db
from gatekeeper.features.permissions.catalog import PermissionCatalog
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.permissions.resolver import PermissionResolver
from gatekeeper.features.sessions.manager import AuthContext
from gatekeeper.features.users.dependencies import get_current_auth, get_current_user
from gatekeeper.features.users.models import User
from gatekeeper.utils import get_logger


log = get_logger(__name__)


def get_catalog(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> PermissionCatalog:
    return PermissionCatalog(db, clock)


def get_ledger(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> PermissionLedger:
    return PermissionLedger(db, clock)


def get_resolver(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> PermissionResolver:
    return PermissionResolver(db, clock)


async def _granted(context: AuthContext, user: User, resolver: PermissionResolver, names: Iterable[str]) -> bool:
    wanted = set(names)
    if config.AUTHZ_MODE == "snapshot" and context.permissions is not None:
        return bool(wanted & set(context.permissions))
    held = set(await resolver.permission_names_for_user(user.id))
    return bool(wanted & held)


def require_permission(permission: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/orders")
        async def create_order(user: User = Depends(require_permission("orders.create"))):
            ...

    Raises:
        HTTPException: 403 if the user doesn't hold the permission
    """
    async def permission_dependency(
        context: Annotated[AuthContext, Depends(get_current_auth)],
        user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        # System admins have all permissions
        if user.is_admin:
            log.debug(f"User {user.id} is admin - granted {permission}")
            return user

        if not await _granted(context, user, resolver, [permission]):
            log.info(f"User {user.id} denied {permission}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission}"
            )
        return user

    return permission_dependency


def require_any_permission(*permissions: str):
    """FastAPI dependency to require ANY of the given permissions."""
    async def permission_dependency(
        context: Annotated[AuthContext, Depends(get_current_auth)],
        user: Annotated[User, Depends(get_current_user)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        if user.is_admin:
            return user
        if not await _granted(context, user, resolver, permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {', '.join(permissions)}"
            )
        return user

    return permission_dependency
