"""
Pydantic schemas for user-role bindings.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class RoleAssign(BaseModel):
    is_primary: bool = False
    expires_at: Optional[datetime] = Field(None, description="Binding stops counting after this instant (UTC)")
    reason: Optional[str] = Field(None, max_length=255)


class RoleTransfer(BaseModel):
    """Move roles from the path user to ``to_user_id``. All active roles when ``role_ids`` is omitted."""
    to_user_id: str
    role_ids: Optional[List[str]] = None
    reason: Optional[str] = Field(None, max_length=255)


class UserRoleResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    is_primary: bool
    expires_at: Optional[datetime]
    assigned_by: Optional[str]
    assigned_at: datetime
    assignment_reason: Optional[str]
    is_active: bool
    revoked_at: Optional[datetime]
    revocation_reason: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class UserRoleDetail(UserRoleResponse):
    role_name: str
    role_display_name: str


class TransferResult(BaseModel):
    transferred: List[str]
    skipped: List[str]


class BindingStatistics(BaseModel):
    total: int
    active: int
    primary: int
    temporary: int
    expired: int
    users_with_roles: int
    by_role: Dict[str, int]
