"""
Role model.

Roles form a single-parent inheritance tree through ``parent_role_id``. A child
role inherits every permission granted to its ancestors.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, Integer, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.core.database.base import Base, TimestampMixin, generate_ulid


class Role(Base, TimestampMixin):
    """
    Role model grouping permissions.

    Examples: super_admin, manager, employee, user
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Role definition
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Hierarchy (acyclic, depth bounded)
    parent_role_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Flags
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Capacity
    max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, parent={self.parent_role_id})>"
