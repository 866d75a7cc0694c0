"""
Role routes: CRUD, hierarchy and role permission grants.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.database.engine import get_db
from gatekeeper.features.audit.service import audit_request
from gatekeeper.features.permissions.dependencies import get_ledger, get_resolver, require_permission
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.permissions.resolver import PermissionResolver
from gatekeeper.features.permissions.schemas import (
    BulkAssignResult,
    BulkPermissionGrant,
    EffectivePermission,
    PermissionGrant,
    PermissionRevoke,
    RolePermissionDetail,
    RolePermissionResponse,
    SyncResult,
)
from gatekeeper.features.roles.dependencies import get_role_manager
from gatekeeper.features.roles.schemas import (
    RoleCreate,
    RoleHierarchy,
    RoleResponse,
    RoleStatistics,
    RoleSummary,
    RoleUpdate,
    SetParentRequest,
)
from gatekeeper.features.roles.service import RoleManager
from gatekeeper.features.users.models import User


router = APIRouter()


# ============================================================================
# Role CRUD
# ============================================================================

@router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    current_user: Annotated[User, Depends(require_permission("roles.manage"))],
):
    """Create a new role, optionally under a parent."""
    created = await roles.create_role(role, created_by=current_user.id)
    await audit_request(db, request, current_user.id, "create", "role", created.id, role.model_dump(mode="json"))
    return created


@router.get("", response_model=list[RoleResponse])
async def list_roles(
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
    is_active: Optional[bool] = None,
    parent_role_id: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List roles."""
    return await roles.list_roles(is_active, parent_role_id, search, skip, limit)


@router.get("/statistics", response_model=RoleStatistics)
async def role_statistics(
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
):
    return await roles.statistics()


@router.get("/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
):
    """Get role by ID."""
    return await roles.get_role(role_id)


@router.patch("/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    current_user: Annotated[User, Depends(require_permission("roles.manage"))],
):
    """Update a role."""
    updated = await roles.update_role(role_id, role_update)
    await audit_request(
        db, request, current_user.id, "update", "role", role_id, role_update.model_dump(mode="json", exclude_unset=True)
    )
    return updated


@router.delete("/{role_id}")
async def delete_role(
    role_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    current_user: Annotated[User, Depends(require_permission("roles.manage"))],
    replacement_role_id: Optional[str] = None,
):
    """
    Delete a role.

    Users still holding the role are moved to ``replacement_role_id``, which
    is required when any exist.
    """
    outcome = await roles.delete_role(role_id, replacement_role_id, deleted_by=current_user.id)
    await audit_request(db, request, current_user.id, "delete", "role", role_id, outcome)
    return outcome


# ============================================================================
# Hierarchy
# ============================================================================

@router.put("/{role_id}/parent", response_model=RoleResponse)
async def set_role_parent(
    role_id: str,
    body: SetParentRequest,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    current_user: Annotated[User, Depends(require_permission("roles.manage"))],
):
    """Move a role under a new parent (or make it a root) and re-sync inherited grants."""
    role = await roles.set_parent(role_id, body.parent_role_id)
    await audit_request(
        db, request, current_user.id, "set_parent", "role", role_id, {"parent_role_id": body.parent_role_id}
    )
    return role


@router.get("/{role_id}/hierarchy", response_model=RoleHierarchy)
async def get_role_hierarchy(
    role_id: str,
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
):
    """Role with its ancestor chain (nearest first) and direct children."""
    return await roles.get_hierarchy(role_id)


@router.get("/{role_id}/descendants", response_model=list[RoleSummary])
async def get_role_descendants(
    role_id: str,
    roles: Annotated[RoleManager, Depends(get_role_manager)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
):
    return await roles.get_descendants(role_id)


# ============================================================================
# Role permission grants
# ============================================================================

@router.get("/{role_id}/permissions", response_model=list[RolePermissionDetail])
async def list_role_permissions(
    role_id: str,
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
    include_inherited: bool = True,
    include_inactive: bool = False,
    include_expired: bool = False,
):
    """Grant rows stored on the role, direct and inherited."""
    return await ledger.get_role_permissions(role_id, include_inherited, include_inactive, include_expired)


@router.post(
    "/{role_id}/permissions/bulk",
    response_model=BulkAssignResult,
)
async def bulk_assign_permissions(
    role_id: str,
    body: BulkPermissionGrant,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    current_user: Annotated[User, Depends(require_permission("roles.assign_permissions"))],
):
    """Grant several permissions at once; already granted ones are reported as skipped."""
    outcome = await ledger.bulk_assign_permissions(
        role_id, body.permission_ids, current_user.id, body.conditions, body.expires_at
    )
    await audit_request(db, request, current_user.id, "bulk_assign", "role", role_id, outcome)
    return outcome


@router.post(
    "/{role_id}/permissions/{permission_id}",
    response_model=RolePermissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_permission_to_role(
    role_id: str,
    permission_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    current_user: Annotated[User, Depends(require_permission("roles.assign_permissions"))],
    body: Optional[PermissionGrant] = None,
):
    """Grant a permission to a role. Descendant roles inherit it."""
    body = body or PermissionGrant()
    row = await ledger.assign_permission(role_id, permission_id, current_user.id, body.conditions, body.expires_at)
    await audit_request(
        db, request, current_user.id, "assign", "role_permission", row.id,
        {"role_id": role_id, "permission_id": permission_id, **body.model_dump(mode="json")},
    )
    return row


@router.delete("/{role_id}/permissions/{permission_id}", response_model=RolePermissionResponse)
async def revoke_permission_from_role(
    role_id: str,
    permission_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    current_user: Annotated[User, Depends(require_permission("roles.assign_permissions"))],
    reason: Optional[str] = None,
):
    """Revoke a direct grant. Inherited grants must be revoked on their source role."""
    row = await ledger.revoke_permission(role_id, permission_id, current_user.id, reason)
    await audit_request(
        db, request, current_user.id, "revoke", "role_permission", row.id,
        PermissionRevoke(reason=reason).model_dump() | {"role_id": role_id, "permission_id": permission_id},
    )
    return row


@router.post("/{role_id}/sync", response_model=SyncResult)
async def sync_role_permissions(
    role_id: str,
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    _user: Annotated[User, Depends(require_permission("roles.manage"))],
):
    """Rebuild the inherited grant rows of a role from its ancestors."""
    outcome = await ledger.sync_inherited_permissions(role_id)
    return SyncResult(role_id=role_id, **outcome)


@router.get("/{role_id}/effective-permissions", response_model=list[EffectivePermission])
async def get_role_effective_permissions(
    role_id: str,
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    _user: Annotated[User, Depends(require_permission("roles.read"))],
    include_expired: bool = False,
):
    """Merged permission set of the role and its ancestors."""
    return await resolver.resolve_for_role(role_id, include_expired)
