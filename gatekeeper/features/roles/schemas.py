"""
Pydantic schemas for roles and the role hierarchy.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class RoleBase(BaseModel):
    """Base role schema."""
    display_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    priority: int = Field(0, ge=0, le=10000)
    max_users: Optional[int] = Field(None, ge=0)


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    name: str = Field(..., min_length=2, max_length=50, description="Unique lowercase role name")
    parent_role_id: Optional[str] = None
    is_default: bool = False
    is_system_role: bool = False

    @field_validator('name')
    @classmethod
    def name_lowercase(cls, v: str) -> str:
        return v.strip().lower()


class RoleUpdate(BaseModel):
    """Schema for updating a role. Parent changes go through PUT /roles/{id}/parent."""
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    display_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    priority: Optional[int] = Field(None, ge=0, le=10000)
    max_users: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None

    @field_validator('name')
    @classmethod
    def name_lowercase(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v is not None else v


class SetParentRequest(BaseModel):
    parent_role_id: Optional[str] = Field(None, description="New parent, or null to make the role a root")


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    name: str
    display_name: str
    description: Optional[str]
    parent_role_id: Optional[str]
    priority: int
    is_system_role: bool
    is_active: bool
    is_default: bool
    max_users: Optional[int]
    user_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleSummary(BaseModel):
    id: str
    name: str
    display_name: str
    priority: int
    parent_role_id: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class RoleHierarchy(BaseModel):
    role: RoleResponse
    ancestors: List[RoleSummary]
    children: List[RoleSummary]
    depth: int


class RoleStatistics(BaseModel):
    total: int
    active: int
    system: int
    with_parent: int
    default_role: Optional[str]
    total_users: int
    by_role: Dict[str, int]
