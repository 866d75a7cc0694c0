"""
Pydantic schemas for the permission catalog, role grants and effective permissions.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from gatekeeper.features.permissions.models import AccessLevel, PermissionScope


# ============================================================================
# Permission Catalog Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    module: str = Field(..., min_length=1, max_length=50, description="Module (e.g., 'orders', 'reports')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'create', 'approve')")
    resource: Optional[str] = Field(None, max_length=100, description="Optional resource inside the module")
    display_name: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    access_level: AccessLevel = AccessLevel.BASIC
    scope: PermissionScope = PermissionScope.OWN
    requires_permissions: Optional[List[str]] = Field(None, description="Names of permissions this one depends on")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission. ``name`` defaults to module.action[.resource]."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    is_system_permission: bool = False

    @field_validator('module', 'action')
    @classmethod
    def lowercase_identifier(cls, v: str) -> str:
        v = v.strip().lower()
        if not v.replace('_', '').isalnum():
            raise ValueError('Must contain only alphanumeric characters and underscores')
        return v

    @field_validator('name')
    @classmethod
    def name_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate permission name format."""
        if v is None:
            return v
        if not v.replace('_', '').replace('.', '').replace(':', '').isalnum():
            raise ValueError('Permission name must contain only alphanumeric characters, underscores, dots, and colons')
        return v.lower()


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. Identity fields are immutable on system permissions."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    module: Optional[str] = Field(None, min_length=1, max_length=50)
    action: Optional[str] = Field(None, min_length=1, max_length=50)
    resource: Optional[str] = Field(None, max_length=100)
    display_name: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    access_level: Optional[AccessLevel] = None
    scope: Optional[PermissionScope] = None
    is_active: Optional[bool] = None
    requires_permissions: Optional[List[str]] = None


class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    name: str
    display_name: str
    description: Optional[str]
    module: str
    action: str
    resource: Optional[str]
    access_level: str
    scope: str
    is_active: bool
    is_system_permission: bool
    usage_count: int
    requires_permissions: Optional[List[str]]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionStatistics(BaseModel):
    total: int
    active: int
    system: int
    by_module: Dict[str, int]
    by_access_level: Dict[str, int]


# ============================================================================
# Role Grant Schemas
# ============================================================================

class PermissionGrant(BaseModel):
    """Grant a permission to a role."""
    conditions: Optional[Dict[str, Any]] = Field(None, description="Opaque JSON conditions, stored as-is")
    expires_at: Optional[datetime] = None


class BulkPermissionGrant(PermissionGrant):
    permission_ids: List[str] = Field(..., min_length=1)


class PermissionRevoke(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class RolePermissionResponse(BaseModel):
    id: str
    role_id: str
    permission_id: str
    granted_by: Optional[str]
    granted_at: datetime
    conditions: Optional[Dict[str, Any]]
    expires_at: Optional[datetime]
    is_active: bool
    is_inherited: bool
    inherited_from_role_id: Optional[str]
    revoked_by: Optional[str]
    revoked_at: Optional[datetime]
    revocation_reason: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class RolePermissionDetail(RolePermissionResponse):
    """Grant joined with its permission's name."""
    permission: str
    module: str
    action: str
    access_level: str


class BulkAssignError(BaseModel):
    permission_id: str
    error: str


class BulkAssignResult(BaseModel):
    assigned: List[str]
    skipped: List[str]
    errors: List[BulkAssignError]


class SyncResult(BaseModel):
    role_id: str
    added: int
    removed: int


class AssignmentStatistics(BaseModel):
    total: int
    active: int
    inherited: int
    direct: int
    temporary: int
    expired: int
    roles_with_permissions: int
    permissions_in_use: int


# ============================================================================
# Effective Permission Schemas
# ============================================================================

class EffectivePermission(BaseModel):
    """One entry of a resolved permission set."""
    permission: str
    permission_id: str
    module: str
    action: str
    resource: Optional[str]
    scope: str
    access_level: str
    conditions: Optional[Dict[str, Any]]
    expires_at: Optional[datetime]
    is_inherited: bool
    source_role: str
    source_role_id: str
    inheritance_level: int
