"""
Permission catalog and role-permission assignment models.

A RolePermission row is either a direct grant on its role or an inherited copy
of an ancestor's grant (``is_inherited`` with ``inherited_from_role_id``).
There is exactly one row per (role, permission) pair; revoking deactivates it
and re-granting reactivates the same row.
"""
import enum
from datetime import datetime
from typing import Any, Dict, List
from sqlalchemy import String, Boolean, ForeignKey, Integer, Text, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.core.database.base import Base, TimestampMixin, generate_ulid


class AccessLevel(str, enum.Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    ADMIN = "admin"


ACCESS_LEVEL_RANK: Dict[str, int] = {
    AccessLevel.BASIC.value: 0,
    AccessLevel.INTERMEDIATE.value: 1,
    AccessLevel.ADVANCED.value: 2,
    AccessLevel.ADMIN.value: 3,
}


class PermissionScope(str, enum.Enum):
    OWN = "own"
    TEAM = "team"
    ORGANIZATION = "organization"
    GLOBAL = "global"


# ============================================================================
# Permission Catalog
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Atomic capability: an action on a module, optionally narrowed to a resource.

    Examples:
    - module="orders", action="create"            -> orders.create
    - module="reports", action="read", resource="sales" -> reports.read.sales
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource: Mapped[str | None] = mapped_column(String(100), nullable=True)

    access_level: Mapped[str] = mapped_column(String(20), default=AccessLevel.BASIC.value, nullable=False)
    scope: Mapped[str] = mapped_column(String(20), default=PermissionScope.OWN.value, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_permission: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Number of active assignment rows, maintained by the ledger
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Advisory only: names of permissions this one is expected alongside
    requires_permissions: Mapped[List[str] | None] = mapped_column(JSON, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, level={self.access_level})>"


# ============================================================================
# Assignment Ledger
# ============================================================================

class RolePermission(Base, TimestampMixin):
    """
    Grant of a permission to a role.

    ``conditions`` is an opaque JSON object: stored and returned, never evaluated.
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    granted_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    conditions: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    is_inherited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    inherited_from_role_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True
    )

    revoked_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RolePermission(role={self.role_id}, permission={self.permission_id}, "
            f"active={self.is_active}, inherited={self.is_inherited})>"
        )
