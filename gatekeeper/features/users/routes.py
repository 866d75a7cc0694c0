"""
User feature routes: profiles, role bindings and effective permissions.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.database.engine import get_db
from gatekeeper.features.audit.service import audit_request
from gatekeeper.features.permissions.dependencies import get_resolver, require_permission
from gatekeeper.features.permissions.resolver import PermissionResolver
from gatekeeper.features.permissions.schemas import EffectivePermission
from gatekeeper.features.roles.dependencies import get_user_role_manager
from gatekeeper.features.sessions.manager import AuthContext, SessionManager
from gatekeeper.features.user_roles.schemas import (
    BindingStatistics,
    RoleAssign,
    RoleTransfer,
    TransferResult,
    UserRoleDetail,
    UserRoleResponse,
)
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.features.users.credentials import hash_password, verify_password
from gatekeeper.features.users.dependencies import (
    get_current_admin_user,
    get_current_auth,
    get_current_user,
    get_session_manager,
)
from gatekeeper.features.users.models import User
from gatekeeper.features.users.schemas import PasswordChange, UserCreate, UserPublic, UserResponse, UserUpdate


router = APIRouter(tags=["users"])


async def _get_user_or_404(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


# ============================================================================
# Current user
# ============================================================================

@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.patch("/me", response_model=UserResponse)
async def update_current_user_profile(
    update_data: UserUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update current user's profile."""
    if update_data.name is not None:
        user.name = update_data.name

    await db.commit()
    await db.refresh(user)
    return user


@router.post("/me/password")
async def change_current_user_password(
    body: PasswordChange,
    request: Request,
    context: Annotated[AuthContext, Depends(get_current_auth)],
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """
    Change the caller's password.

    Every other session of the user is revoked; the session making the
    request stays valid.
    """
    if not verify_password(body.current_password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect"
        )
    if body.new_password == body.current_password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="New password must differ from the current password"
        )

    user.password_hash = hash_password(body.new_password)
    await db.commit()
    revoked = await sessions.revoke_all_sessions(
        user.id, except_session_id=context.session_id, reason="password_changed"
    )
    await audit_request(db, request, user.id, "change_password", "user", user.id, {"revoked_sessions": revoked})
    return {"message": "Password changed successfully", "revoked_sessions": revoked}


@router.get("/me/roles", response_model=list[UserRoleDetail])
async def get_my_roles(
    user: Annotated[User, Depends(get_current_user)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
):
    return await bindings.get_user_roles(user.id)


@router.get("/me/permissions", response_model=list[EffectivePermission])
async def get_my_permissions(
    user: Annotated[User, Depends(get_current_user)],
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
):
    """Effective permissions of the caller across all bound roles."""
    return await resolver.resolve_for_user(user.id)


# ============================================================================
# User administration
# ============================================================================

@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    request: Request,
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
):
    """Create a user (admin only). The user receives the default role, if one is configured."""
    user = User(
        email=user_data.email,
        name=user_data.name,
        password_hash=hash_password(user_data.password),
        is_admin=user_data.is_admin,
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

    await bindings.assign_default_role(user.id, assigned_by=admin.id)
    await audit_request(db, request, admin.id, "create", "user", user.id, {"email": user.email})
    return user


@router.get("/roles/statistics", response_model=BindingStatistics)
async def binding_statistics(
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    _user: Annotated[User, Depends(require_permission("users.read"))],
):
    return await bindings.statistics()


@router.get("", response_model=list[UserPublic])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    _user: Annotated[User, Depends(require_permission("users.read"))],
    skip: int = 0,
    limit: int = 50
):
    """List all active users (public info only)."""
    result = await db.execute(
        select(User)
        .where(User.is_active.is_(True))
        .order_by(User.id)
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    _user: Annotated[User, Depends(require_permission("users.read"))],
):
    return await _get_user_or_404(db, user_id)


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    request: Request,
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Deactivate a user account (admin only) and revoke all of its sessions."""
    user = await _get_user_or_404(db, user_id)

    # Prevent self-deactivation
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot deactivate your own account"
        )

    user.is_active = False
    await db.commit()
    revoked = await sessions.revoke_all_sessions(user_id, reason="user_deactivated")
    await audit_request(db, request, admin.id, "deactivate", "user", user_id, {"revoked_sessions": revoked})

    return {"message": "User deactivated successfully", "revoked_sessions": revoked}


# ============================================================================
# Role bindings
# ============================================================================

@router.get("/{user_id}/roles", response_model=list[UserRoleDetail])
async def get_user_roles(
    user_id: str,
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    _user: Annotated[User, Depends(require_permission("users.read"))],
    include_inactive: bool = False,
):
    return await bindings.get_user_roles(user_id, include_inactive)


@router.post("/{user_id}/roles/transfer", response_model=TransferResult)
async def transfer_user_roles(
    user_id: str,
    body: RoleTransfer,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    current_user: Annotated[User, Depends(require_permission("users.assign_roles"))],
):
    """Move role bindings from this user to another one."""
    outcome = await bindings.transfer_roles(user_id, body.to_user_id, current_user.id, body.role_ids, body.reason)
    await audit_request(
        db, request, current_user.id, "transfer_roles", "user", user_id,
        {"to_user_id": body.to_user_id, **outcome},
    )
    return outcome


@router.post(
    "/{user_id}/roles/{role_id}",
    response_model=UserRoleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_role_to_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    current_user: Annotated[User, Depends(require_permission("users.assign_roles"))],
    body: Optional[RoleAssign] = None,
):
    body = body or RoleAssign()
    binding = await bindings.assign_role(
        user_id, role_id, current_user.id, body.is_primary, body.expires_at, body.reason
    )
    await audit_request(
        db, request, current_user.id, "assign_role", "user", user_id,
        {"role_id": role_id, **body.model_dump(mode="json")},
    )
    return binding


@router.delete("/{user_id}/roles/{role_id}", response_model=UserRoleResponse)
async def revoke_role_from_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    current_user: Annotated[User, Depends(require_permission("users.assign_roles"))],
    reason: Optional[str] = None,
):
    binding = await bindings.revoke_role(user_id, role_id, current_user.id, reason)
    await audit_request(
        db, request, current_user.id, "revoke_role", "user", user_id, {"role_id": role_id, "reason": reason}
    )
    return binding


@router.put("/{user_id}/roles/{role_id}/primary", response_model=UserRoleResponse)
async def set_primary_role(
    user_id: str,
    role_id: str,
    bindings: Annotated[UserRoleManager, Depends(get_user_role_manager)],
    _user: Annotated[User, Depends(require_permission("users.assign_roles"))],
):
    """Make one of the user's active roles the primary one."""
    return await bindings.set_primary_role(user_id, role_id)


@router.get("/{user_id}/effective-permissions", response_model=list[EffectivePermission])
async def get_user_effective_permissions(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    _user: Annotated[User, Depends(require_permission("users.read"))],
    include_expired: bool = False,
):
    await _get_user_or_404(db, user_id)
    return await resolver.resolve_for_user(user_id, include_expired)
