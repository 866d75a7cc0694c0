"""
Permission catalog routes.

Endpoints:
- Permission CRUD (catalog)
- Catalog and assignment statistics
- Expiry sweep for role grants
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.database.engine import get_db
from gatekeeper.features.audit.service import audit_request
from gatekeeper.features.permissions.catalog import PermissionCatalog
from gatekeeper.features.permissions.dependencies import get_catalog, get_ledger, require_permission
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.permissions.schemas import (
    AssignmentStatistics,
    PermissionCreate,
    PermissionResponse,
    PermissionStatistics,
    PermissionUpdate,
)
from gatekeeper.features.users.models import User


router = APIRouter()


@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permissions.manage"))],
):
    """Create a new permission."""
    created = await catalog.create_permission(permission)
    await audit_request(
        db, request, current_user.id, "create", "permission", created.id, permission.model_dump(mode="json")
    )
    return created


@router.get("", response_model=list[PermissionResponse])
async def list_permissions(
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    _user: Annotated[User, Depends(require_permission("permissions.read"))],
    module: Optional[str] = None,
    access_level: Optional[str] = None,
    scope: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List permissions with optional filters."""
    return await catalog.list_permissions(module, access_level, scope, is_active, search, skip, limit)


@router.get("/statistics")
async def permission_statistics(
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    _user: Annotated[User, Depends(require_permission("permissions.read"))],
):
    """Catalog counts and role-grant counts."""
    return {
        "catalog": PermissionStatistics(**await catalog.statistics()),
        "assignments": AssignmentStatistics(**await ledger.statistics()),
    }


@router.post("/cleanup-expired")
async def cleanup_expired_assignments(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger: Annotated[PermissionLedger, Depends(get_ledger)],
    current_user: Annotated[User, Depends(require_permission("permissions.manage"))],
):
    """Deactivate role grants whose expiry has passed."""
    deactivated = await ledger.cleanup_expired_assignments()
    await audit_request(db, request, current_user.id, "cleanup", "role_permission", details={"deactivated": deactivated})
    return {"deactivated": deactivated}


@router.get("/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    _user: Annotated[User, Depends(require_permission("permissions.read"))],
):
    """Get permission by ID."""
    return await catalog.get_permission(permission_id)


@router.patch("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permissions.manage"))],
):
    """Update a permission. Identity fields of system permissions are immutable."""
    updated = await catalog.update_permission(permission_id, permission_update)
    await audit_request(
        db, request, current_user.id, "update", "permission", permission_id,
        permission_update.model_dump(mode="json", exclude_unset=True),
    )
    return updated


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    current_user: Annotated[User, Depends(require_permission("permissions.manage"))],
):
    """Soft-delete a permission that no role holds directly."""
    await catalog.delete_permission(permission_id)
    await audit_request(db, request, current_user.id, "delete", "permission", permission_id)
