"""
Role hierarchy manager.

Parent links are validated before they are written: no self-parenting, no
cycles, and no chain deeper than MAX_HIERARCHY_DEPTH. Every hierarchy change
re-syncs inherited permission rows of the affected subtree in the same
transaction.
"""
import re
from typing import Any, Dict, List, Optional
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.core.clock import Clock
from gatekeeper.core.exceptions import (
    CapacityExceededError,
    ConflictError,
    DependencyViolationError,
    InvalidRequestError,
)
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.roles import hierarchy
from gatekeeper.features.roles.models import Role
from gatekeeper.features.roles.schemas import RoleCreate, RoleUpdate
from gatekeeper.features.user_roles.models import UserRole
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.utils import get_logger


log = get_logger(__name__)

ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*[a-z0-9]$")

RESERVED_ROLE_NAMES = frozenset({
    "root", "system", "anonymous", "guest", "public", "null", "undefined",
    "admin", "administrator", "super", "superuser", "sa", "dba",
})


def validate_role_name(name: str) -> str:
    name = name.strip().lower()
    if not 2 <= len(name) <= 50:
        raise InvalidRequestError("Role name must be 2-50 characters long", name=name)
    if not ROLE_NAME_PATTERN.match(name):
        raise InvalidRequestError(
            "Role name must start with a letter and contain only lowercase letters, digits and underscores",
            name=name,
        )
    if name in RESERVED_ROLE_NAMES:
        raise InvalidRequestError(f"Role name {name!r} is reserved", name=name)
    return name


class RoleManager:
    def __init__(self, db: AsyncSession, clock: Clock, max_depth: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.max_depth = max_depth if max_depth is not None else config.MAX_HIERARCHY_DEPTH
        self.ledger = PermissionLedger(db, clock, self.max_depth)
        self.bindings = UserRoleManager(db, clock)

    # ========================================================================
    # CRUD
    # ========================================================================

    async def create_role(self, data: RoleCreate, created_by: Optional[str] = None) -> Role:
        name = validate_role_name(data.name)
        try:
            if await self._find_by_name(name) is not None:
                raise ConflictError(f"Role {name!r} already exists", name=name)

            if data.parent_role_id is not None:
                await self._check_parent_depth(data.parent_role_id)

            role = Role(
                name=name,
                display_name=data.display_name or name.replace("_", " ").title(),
                description=data.description,
                parent_role_id=data.parent_role_id,
                priority=data.priority,
                is_system_role=data.is_system_role,
                is_default=False,
                max_users=data.max_users,
                user_count=0,
                created_by=created_by,
            )
            self.db.add(role)
            await self.db.flush()

            if data.is_default:
                await self._make_default(role)
            if role.parent_role_id is not None:
                await self.ledger.resync_role(role.id)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Role {name!r} already exists", name=name)
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(role)
        log.info(f"Role {role.name} created ({role.id}) by {created_by}")
        return role

    async def update_role(self, role_id: str, data: RoleUpdate) -> Role:
        changes = data.model_dump(exclude_unset=True)
        try:
            role = await hierarchy.load_role(self.db, role_id, lock=True)

            new_name = changes.pop("name", None)
            if new_name is not None and new_name != role.name:
                if role.is_system_role:
                    raise ConflictError("System roles cannot be renamed", role_id=role_id)
                new_name = validate_role_name(new_name)
                if await self._find_by_name(new_name) is not None:
                    raise ConflictError(f"Role {new_name!r} already exists", name=new_name)
                role.name = new_name

            if "max_users" in changes and changes["max_users"] is not None:
                if changes["max_users"] < role.user_count:
                    raise CapacityExceededError(
                        "max_users cannot be lower than the current number of users",
                        role_id=role_id,
                        user_count=role.user_count,
                    )

            if changes.get("is_active") is False and role.is_system_role:
                raise ConflictError("System roles cannot be deactivated", role_id=role_id)

            make_default = changes.pop("is_default", None)
            for field, value in changes.items():
                setattr(role, field, value)
            if make_default:
                await self._make_default(role)
            elif make_default is False:
                role.is_default = False

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(role)
        log.info(f"Role {role.name} updated: {sorted(data.model_dump(exclude_unset=True))}")
        return role

    async def get_role(self, role_id: str) -> Role:
        return await hierarchy.load_role(self.db, role_id)

    async def get_default_role(self) -> Optional[Role]:
        result = await self.db.execute(
            select(Role).where(Role.is_default.is_(True), Role.deleted_at.is_(None))
        )
        return result.scalars().first()

    async def list_roles(
        self,
        is_active: Optional[bool] = None,
        parent_role_id: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Role]:
        stmt = select(Role).where(Role.deleted_at.is_(None))
        if is_active is not None:
            stmt = stmt.where(Role.is_active == is_active)
        if parent_role_id is not None:
            stmt = stmt.where(Role.parent_role_id == parent_role_id)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(func.lower(Role.name).like(pattern) | func.lower(Role.display_name).like(pattern))
        stmt = stmt.order_by(Role.priority.desc(), Role.name).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Hierarchy
    # ========================================================================

    async def set_parent(self, role_id: str, parent_id: Optional[str]) -> Role:
        """Link ``role_id`` under ``parent_id`` (or detach it) and re-sync the subtree."""
        if parent_id == role_id:
            raise ConflictError("A role cannot be its own parent", role_id=role_id)
        try:
            role = await hierarchy.load_role(self.db, role_id, lock=True)
            if parent_id is not None:
                chain = await hierarchy.ancestor_chain(self.db, parent_id, self.max_depth + 1)
                if any(ancestor.id == role_id for ancestor in chain):
                    raise ConflictError(
                        "Setting this parent would create a cycle",
                        role_id=role_id,
                        parent_role_id=parent_id,
                    )
                height = await hierarchy.subtree_height(self.db, role_id, self.max_depth)
                depth = len(chain) + height
                if depth > self.max_depth:
                    raise ConflictError(
                        f"Hierarchy depth would exceed {self.max_depth}",
                        role_id=role_id,
                        parent_role_id=parent_id,
                        depth=depth,
                    )

            previous = role.parent_role_id
            role.parent_role_id = parent_id
            await self.db.flush()
            await self.ledger.resync_role(role_id)
            await self.ledger.resync_descendants(role_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(role)
        log.info(f"Role {role_id} parent changed {previous} -> {parent_id}")
        return role

    async def get_ancestors(self, role_id: str) -> List[Role]:
        chain = await hierarchy.ancestor_chain(self.db, role_id, self.max_depth)
        return chain[1:]

    async def get_descendants(self, role_id: str) -> List[Role]:
        await hierarchy.load_role(self.db, role_id)
        return [role for role, _ in await hierarchy.descendants(self.db, role_id, self.max_depth)]

    async def get_hierarchy(self, role_id: str) -> Dict[str, Any]:
        chain = await hierarchy.ancestor_chain(self.db, role_id, self.max_depth)
        return {
            "role": chain[0],
            "ancestors": chain[1:],
            "children": await hierarchy.children(self.db, role_id),
            "depth": len(chain) - 1,
        }

    async def _check_parent_depth(self, parent_id: str) -> None:
        chain = await hierarchy.ancestor_chain(self.db, parent_id, self.max_depth + 1)
        if len(chain) > self.max_depth:
            raise ConflictError(
                f"Hierarchy depth would exceed {self.max_depth}",
                parent_role_id=parent_id,
                depth=len(chain),
            )

    # ========================================================================
    # Deletion
    # ========================================================================

    async def delete_role(
        self,
        role_id: str,
        replacement_role_id: Optional[str] = None,
        deleted_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Soft-delete a role.

        Users still bound to it are moved to ``replacement_role_id``, which is
        required when any exist. Child roles are detached and re-synced.
        """
        try:
            role = await hierarchy.load_role(self.db, role_id, lock=True)
            if role.is_system_role:
                raise ConflictError("System roles cannot be deleted", role_id=role_id)

            result = await self.db.execute(
                select(func.count(UserRole.id)).where(UserRole.role_id == role_id, UserRole.is_active.is_(True))
            )
            active_bindings = result.scalar_one()

            moved = 0
            if active_bindings:
                if replacement_role_id is None:
                    raise DependencyViolationError(
                        "Role still has users; a replacement role is required",
                        role_id=role_id,
                        active_bindings=active_bindings,
                    )
                if replacement_role_id == role_id:
                    raise InvalidRequestError("Replacement role must differ from the deleted role", role_id=role_id)
                replacement = await hierarchy.load_role(self.db, replacement_role_id, lock=True)
                if not replacement.is_active:
                    raise InvalidRequestError("Replacement role is not active", role_id=replacement_role_id)
                moved = await self.bindings.move_bindings(role_id, replacement_role_id, deleted_by)

            detached = await hierarchy.children(self.db, role_id)
            for child in detached:
                child.parent_role_id = None

            role.deleted_at = self.clock.now()
            role.is_active = False
            role.is_default = False
            touched = await self.ledger.deactivate_role_rows(role_id, "role_deleted")
            await self.ledger.catalog.refresh_usage(touched)

            for child in detached:
                await self.ledger.resync_role(child.id)
                await self.ledger.resync_descendants(child.id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Role {role_id} deleted by {deleted_by}: {moved} users moved, {len(detached)} children detached")
        return {
            "role_id": role_id,
            "moved_users": moved,
            "detached_children": [child.id for child in detached],
        }

    # ========================================================================
    # Statistics
    # ========================================================================

    async def statistics(self) -> Dict[str, Any]:
        alive = Role.deleted_at.is_(None)

        async def count(*criteria) -> int:
            result = await self.db.execute(select(func.count(Role.id)).where(alive, *criteria))
            return result.scalar_one()

        default_role = await self.get_default_role()
        by_role = await self.db.execute(select(Role.name, Role.user_count).where(alive).order_by(Role.name))
        users = await self.db.execute(select(func.coalesce(func.sum(Role.user_count), 0)).where(alive))
        return {
            "total": await count(),
            "active": await count(Role.is_active.is_(True)),
            "system": await count(Role.is_system_role.is_(True)),
            "with_parent": await count(Role.parent_role_id.is_not(None)),
            "default_role": default_role.name if default_role else None,
            "total_users": users.scalar_one(),
            "by_role": {name: user_count for name, user_count in by_role.all()},
        }

    async def _find_by_name(self, name: str) -> Optional[Role]:
        result = await self.db.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def _make_default(self, role: Role) -> None:
        result = await self.db.execute(
            select(Role).where(Role.is_default.is_(True), Role.id != role.id)
        )
        for other in result.scalars().all():
            other.is_default = False
        role.is_default = True
        await self.db.flush()

