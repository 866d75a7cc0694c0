"""
Effective permission resolution.

Resolution is always live: it walks the ancestor chain and reads direct grants
on every node, so a revoke or an expiry is visible on the next call. There is
no cache to invalidate.
"""
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.core.clock import Clock
from gatekeeper.core.database.retry import retry_read
from gatekeeper.features.permissions.models import ACCESS_LEVEL_RANK, Permission, RolePermission
from gatekeeper.features.permissions.schemas import EffectivePermission
from gatekeeper.features.roles import hierarchy
from gatekeeper.features.roles.models import Role
from gatekeeper.features.user_roles.models import UserRole
from gatekeeper.utils import get_logger


log = get_logger(__name__)


def _preference(entry: EffectivePermission, priority: int) -> Tuple:
    """Sort key: lower is preferred."""
    return (
        entry.inheritance_level,
        -ACCESS_LEVEL_RANK.get(entry.access_level, 0),
        -priority,
        entry.source_role,
    )


class PermissionResolver:
    def __init__(self, db: AsyncSession, clock: Clock, max_depth: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.max_depth = max_depth if max_depth is not None else config.MAX_HIERARCHY_DEPTH

    async def resolve_for_role(self, role_id: str, include_expired: bool = False) -> List[EffectivePermission]:
        """
        Effective permissions of a role.

        Level 0 is the role's own direct grants, level N comes from the N-th
        ancestor. When a permission is reachable more than once the lowest
        level wins; ties go to the higher access level, then the higher
        priority source role, then the source role name.
        """
        async def load():
            chain = await hierarchy.ancestor_chain(self.db, role_id, self.max_depth)
            return await self._collect(chain, include_expired)

        candidates = await retry_read(load)
        return self._merge(candidates)

    async def resolve_for_user(self, user_id: str, include_expired: bool = False) -> List[EffectivePermission]:
        """Union of the effective permissions of the user's live role bindings."""
        async def load():
            candidates: List[Tuple[EffectivePermission, int]] = []
            for role in await self._bound_roles(user_id):
                chain = await hierarchy.ancestor_chain(self.db, role.id, self.max_depth)
                candidates.extend(await self._collect(chain, include_expired))
            return candidates

        candidates = await retry_read(load)
        return self._merge(candidates)

    async def has_permission(self, user_id: str, name: str) -> bool:
        for entry in await self.resolve_for_user(user_id):
            if entry.permission == name:
                return True
        return False

    async def permission_names_for_user(self, user_id: str) -> List[str]:
        return [entry.permission for entry in await self.resolve_for_user(user_id)]

    async def _bound_roles(self, user_id: str) -> List[Role]:
        now = self.clock.now()
        result = await self.db.execute(
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
                Role.is_active.is_(True),
                Role.deleted_at.is_(None),
            )
            .order_by(Role.priority.desc(), Role.name)
        )
        return list(result.scalars().all())

    async def _collect(
        self,
        chain: Sequence[Role],
        include_expired: bool,
    ) -> List[Tuple[EffectivePermission, int]]:
        levels: Dict[str, int] = {role.id: level for level, role in enumerate(chain)}
        roles: Dict[str, Role] = {role.id: role for role in chain}

        stmt = (
            select(RolePermission, Permission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(
                RolePermission.role_id.in_(list(levels)),
                RolePermission.is_active.is_(True),
                RolePermission.is_inherited.is_(False),
                Permission.is_active.is_(True),
                Permission.deleted_at.is_(None),
            )
        )
        if not include_expired:
            stmt = stmt.where(
                or_(RolePermission.expires_at.is_(None), RolePermission.expires_at > self.clock.now())
            )
        result = await self.db.execute(stmt)

        candidates = []
        for row, permission in result.all():
            source = roles[row.role_id]
            level = levels[row.role_id]
            entry = EffectivePermission(
                permission=permission.name,
                permission_id=permission.id,
                module=permission.module,
                action=permission.action,
                resource=permission.resource,
                scope=permission.scope,
                access_level=permission.access_level,
                conditions=row.conditions,
                expires_at=row.expires_at,
                is_inherited=level > 0,
                source_role=source.name,
                source_role_id=source.id,
                inheritance_level=level,
            )
            candidates.append((entry, source.priority))
        return candidates

    @staticmethod
    def _merge(candidates: Sequence[Tuple[EffectivePermission, int]]) -> List[EffectivePermission]:
        best: Dict[str, Tuple[EffectivePermission, int]] = {}
        for entry, priority in candidates:
            current = best.get(entry.permission_id)
            if current is None or _preference(entry, priority) < _preference(*current):
                best[entry.permission_id] = (entry, priority)
        return sorted((entry for entry, _ in best.values()), key=lambda e: e.permission)
