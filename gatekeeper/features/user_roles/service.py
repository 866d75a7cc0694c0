"""
User-role binding manager.

Keeps ``Role.user_count`` in step with active bindings and maintains the
single-primary-role rule: the first binding becomes primary, and revoking the
primary promotes the earliest-assigned remaining binding.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.clock import Clock, naive_utc
from gatekeeper.core.exceptions import (
    CapacityExceededError,
    ConflictError,
    ExpiredError,
    InvalidRequestError,
    NotFoundError,
)
from gatekeeper.features.roles import hierarchy
from gatekeeper.features.roles.models import Role
from gatekeeper.features.user_roles.models import UserRole
from gatekeeper.features.users.models import User
from gatekeeper.utils import get_logger


log = get_logger(__name__)


class UserRoleManager:
    def __init__(self, db: AsyncSession, clock: Clock):
        self.db = db
        self.clock = clock

    # ========================================================================
    # Assign / revoke
    # ========================================================================

    async def assign_role(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str] = None,
        is_primary: bool = False,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> UserRole:
        try:
            binding = await self._assign(user_id, role_id, assigned_by, is_primary, expires_at, reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Role {role_id} assigned to user {user_id} by {assigned_by}")
        return binding

    async def _assign(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        is_primary: bool,
        expires_at: Optional[datetime],
        reason: Optional[str],
    ) -> UserRole:
        now = self.clock.now()
        if expires_at is not None:
            expires_at = naive_utc(expires_at)
            if expires_at <= now:
                raise ExpiredError("Expiration must be in the future", expires_at=expires_at.isoformat())

        await self._get_user(user_id)
        role = await hierarchy.load_role(self.db, role_id, lock=True)
        if not role.is_active:
            raise InvalidRequestError("Role is not active", role_id=role_id)

        binding = await self._get_binding(user_id, role_id)
        if binding is not None and binding.is_active:
            raise ConflictError("User already has this role", user_id=user_id, role_id=role_id)

        if role.max_users is not None and role.user_count >= role.max_users:
            raise CapacityExceededError(
                "Role has reached its maximum number of users",
                role_id=role_id,
                max_users=role.max_users,
            )

        if binding is None:
            binding = UserRole(user_id=user_id, role_id=role_id)
            self.db.add(binding)
        binding.is_active = True
        binding.is_primary = False
        binding.expires_at = expires_at
        binding.assigned_by = assigned_by
        binding.assigned_at = now
        binding.assignment_reason = reason
        binding.revoked_by = None
        binding.revoked_at = None
        binding.revocation_reason = None
        role.user_count += 1
        await self.db.flush()

        if is_primary or await self._primary_binding(user_id) is None:
            await self._make_primary(user_id, binding)
        return binding

    async def revoke_role(
        self,
        user_id: str,
        role_id: str,
        revoked_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> UserRole:
        try:
            binding = await self._get_binding(user_id, role_id)
            if binding is None or not binding.is_active:
                raise NotFoundError("User does not have this role", user_id=user_id, role_id=role_id)
            await self._deactivate(binding, revoked_by, reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Role {role_id} revoked from user {user_id} by {revoked_by}: {reason}")
        return binding

    async def _deactivate(self, binding: UserRole, revoked_by: Optional[str], reason: Optional[str]) -> None:
        was_primary = binding.is_primary
        binding.is_active = False
        binding.is_primary = False
        binding.revoked_by = revoked_by
        binding.revoked_at = self.clock.now()
        binding.revocation_reason = reason

        role = await self.db.get(Role, binding.role_id)
        if role is not None and role.user_count > 0:
            role.user_count -= 1
        await self.db.flush()

        if was_primary:
            await self._promote_next_primary(binding.user_id)

    # ========================================================================
    # Primary role
    # ========================================================================

    async def set_primary_role(self, user_id: str, role_id: str) -> UserRole:
        try:
            binding = await self._get_binding(user_id, role_id)
            if binding is None or not binding.is_active:
                raise NotFoundError("User does not have this role", user_id=user_id, role_id=role_id)
            await self._make_primary(user_id, binding)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return binding

    async def get_primary_role(self, user_id: str) -> Optional[Role]:
        binding = await self._primary_binding(user_id)
        if binding is None:
            return None
        return await self.db.get(Role, binding.role_id)

    async def _primary_binding(self, user_id: str) -> Optional[UserRole]:
        result = await self.db.execute(
            select(UserRole).where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                UserRole.is_primary.is_(True),
            )
        )
        return result.scalars().first()

    async def _make_primary(self, user_id: str, binding: UserRole) -> None:
        result = await self.db.execute(
            select(UserRole).where(
                UserRole.user_id == user_id,
                UserRole.is_primary.is_(True),
                UserRole.id != binding.id,
            )
        )
        for other in result.scalars().all():
            other.is_primary = False
        binding.is_primary = True
        await self.db.flush()

    async def _promote_next_primary(self, user_id: str) -> Optional[UserRole]:
        result = await self.db.execute(
            select(UserRole)
            .where(UserRole.user_id == user_id, UserRole.is_active.is_(True))
            .order_by(UserRole.assigned_at, UserRole.id)
        )
        successor = result.scalars().first()
        if successor is not None:
            await self._make_primary(user_id, successor)
            log.info(f"Role {successor.role_id} promoted to primary for user {user_id}")
        return successor

    # ========================================================================
    # Transfers and defaults
    # ========================================================================

    async def transfer_roles(
        self,
        from_user_id: str,
        to_user_id: str,
        transferred_by: Optional[str] = None,
        role_ids: Optional[Iterable[str]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, List[str]]:
        """
        Move active bindings from one user to another in one transaction.

        Roles the target already holds are skipped; the source binding is
        deactivated either way.
        """
        if from_user_id == to_user_id:
            raise InvalidRequestError("Cannot transfer roles to the same user", user_id=from_user_id)
        transferred: List[str] = []
        skipped: List[str] = []
        try:
            await self._get_user(from_user_id)
            await self._get_user(to_user_id)

            stmt = (
                select(UserRole)
                .where(UserRole.user_id == from_user_id, UserRole.is_active.is_(True))
                .order_by(UserRole.assigned_at, UserRole.id)
            )
            wanted = set(role_ids) if role_ids is not None else None
            if wanted is not None:
                stmt = stmt.where(UserRole.role_id.in_(wanted))
            result = await self.db.execute(stmt)
            bindings = list(result.scalars().all())
            if not bindings:
                raise NotFoundError("No active roles to transfer", user_id=from_user_id)

            target_has_primary = await self._primary_binding(to_user_id) is not None
            for binding in bindings:
                carry_primary = binding.is_primary and not target_has_primary
                role_id = binding.role_id
                await self._deactivate(binding, transferred_by, "transferred")

                if binding.expires_at is not None and binding.expires_at <= self.clock.now():
                    skipped.append(role_id)
                    continue

                existing = await self._get_binding(to_user_id, role_id)
                if existing is not None and existing.is_active:
                    skipped.append(role_id)
                    continue

                moved = await self._assign(
                    to_user_id,
                    role_id,
                    transferred_by,
                    carry_primary,
                    binding.expires_at,
                    reason or f"transferred from {from_user_id}",
                )
                target_has_primary = target_has_primary or moved.is_primary
                transferred.append(role_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Transferred roles {transferred} from {from_user_id} to {to_user_id} (skipped {skipped})")
        return {"transferred": transferred, "skipped": skipped}

    async def assign_default_role(self, user_id: str, assigned_by: Optional[str] = None) -> Optional[UserRole]:
        result = await self.db.execute(
            select(Role).where(Role.is_default.is_(True), Role.is_active.is_(True), Role.deleted_at.is_(None))
        )
        role = result.scalars().first()
        if role is None:
            log.warning(f"No default role configured, user {user_id} left without roles")
            return None
        binding = await self._get_binding(user_id, role.id)
        if binding is not None and binding.is_active:
            return binding
        return await self.assign_role(user_id, role.id, assigned_by, reason="default role")

    async def move_bindings(self, from_role_id: str, to_role_id: str, moved_by: Optional[str] = None) -> int:
        """Rebind every active user of one role to another. Does not commit."""
        result = await self.db.execute(
            select(UserRole).where(UserRole.role_id == from_role_id, UserRole.is_active.is_(True))
        )
        moved = 0
        for binding in list(result.scalars().all()):
            carry_primary = binding.is_primary
            await self._deactivate(binding, moved_by, "role_deleted")
            if binding.expires_at is not None and binding.expires_at <= self.clock.now():
                continue
            existing = await self._get_binding(binding.user_id, to_role_id)
            if existing is not None and existing.is_active:
                if carry_primary:
                    await self._make_primary(binding.user_id, existing)
                continue
            await self._assign(binding.user_id, to_role_id, moved_by, carry_primary, binding.expires_at, "role_replaced")
            moved += 1
        return moved

    async def cleanup_expired_bindings(self) -> int:
        """Deactivate bindings whose expiry has passed."""
        now = self.clock.now()
        try:
            result = await self.db.execute(
                select(UserRole).where(
                    UserRole.is_active.is_(True),
                    UserRole.expires_at.is_not(None),
                    UserRole.expires_at <= now,
                )
            )
            expired = list(result.scalars().all())
            for binding in expired:
                await self._deactivate(binding, None, "expired")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        if expired:
            log.info(f"Deactivated {len(expired)} expired role bindings")
        return len(expired)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_user_roles(self, user_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
        await self._get_user(user_id)
        stmt = (
            select(UserRole, Role)
            .join(Role, Role.id == UserRole.role_id)
            .where(UserRole.user_id == user_id)
            .order_by(UserRole.is_primary.desc(), UserRole.assigned_at)
        )
        if not include_inactive:
            now = self.clock.now()
            stmt = stmt.where(
                UserRole.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
            )
        result = await self.db.execute(stmt)
        return [binding_detail(binding, role) for binding, role in result.all()]

    async def active_role_ids(self, user_id: str) -> List[str]:
        now = self.clock.now()
        result = await self.db.execute(
            select(UserRole.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
                Role.is_active.is_(True),
                Role.deleted_at.is_(None),
            )
            .order_by(UserRole.is_primary.desc(), UserRole.assigned_at)
        )
        return list(result.scalars().all())

    async def statistics(self) -> Dict[str, Any]:
        now = self.clock.now()
        active = UserRole.is_active.is_(True)

        async def count(*criteria) -> int:
            result = await self.db.execute(select(func.count(UserRole.id)).where(*criteria))
            return result.scalar_one()

        users = await self.db.execute(select(func.count(func.distinct(UserRole.user_id))).where(active))
        by_role = await self.db.execute(
            select(Role.name, func.count(UserRole.id))
            .join(Role, Role.id == UserRole.role_id)
            .where(active)
            .group_by(Role.name)
        )
        return {
            "total": await count(),
            "active": await count(active),
            "primary": await count(active, UserRole.is_primary.is_(True)),
            "temporary": await count(active, UserRole.expires_at.is_not(None)),
            "expired": await count(active, UserRole.expires_at.is_not(None), UserRole.expires_at <= now),
            "users_with_roles": users.scalar_one(),
            "by_role": {name: total for name, total in by_role.all()},
        }

    async def _get_binding(self, user_id: str, role_id: str) -> Optional[UserRole]:
        result = await self.db.execute(
            select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        return result.scalar_one_or_none()

    async def _get_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", user_id=user_id)
        return user


def binding_detail(binding: UserRole, role: Role) -> Dict[str, Any]:
    return {
        "id": binding.id,
        "user_id": binding.user_id,
        "role_id": binding.role_id,
        "role_name": role.name,
        "role_display_name": role.display_name,
        "is_primary": binding.is_primary,
        "expires_at": binding.expires_at,
        "assigned_by": binding.assigned_by,
        "assigned_at": binding.assigned_at,
        "assignment_reason": binding.assignment_reason,
        "is_active": binding.is_active,
        "revoked_at": binding.revoked_at,
        "revocation_reason": binding.revocation_reason,
    }
