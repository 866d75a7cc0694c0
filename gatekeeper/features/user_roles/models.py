"""
User-role binding model.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.core.database.base import Base, TimestampMixin, generate_ulid


class UserRole(Base, TimestampMixin):
    """
    Binding of a user to a role.

    One row per (user, role) pair. At most one active binding per user is primary.
    """
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )

    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    assigned_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    assignment_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    revoked_by: Mapped[str | None] = mapped_column(String(26), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<UserRole(user={self.user_id}, role={self.role_id}, primary={self.is_primary}, active={self.is_active})>"
