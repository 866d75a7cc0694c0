"""
Permission catalog: CRUD over atomic capabilities.
"""
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.clock import Clock
from gatekeeper.core.exceptions import ConflictError, DependencyViolationError, NotFoundError
from gatekeeper.features.permissions.models import Permission, RolePermission
from gatekeeper.features.permissions.schemas import PermissionCreate, PermissionUpdate
from gatekeeper.utils import get_logger


log = get_logger(__name__)

IDENTITY_FIELDS = ("name", "module", "action", "resource")


def build_permission_name(module: str, action: str, resource: Optional[str] = None) -> str:
    parts = [module, action]
    if resource:
        parts.append(resource)
    return ".".join(parts).lower()


class PermissionCatalog:
    def __init__(self, db: AsyncSession, clock: Clock):
        self.db = db
        self.clock = clock

    async def create_permission(self, data: PermissionCreate) -> Permission:
        name = data.name or build_permission_name(data.module, data.action, data.resource)
        if await self.get_by_name(name, include_deleted=True) is not None:
            raise ConflictError(f"Permission {name!r} already exists", name=name)

        permission = Permission(
            name=name,
            display_name=data.display_name or name,
            description=data.description,
            module=data.module,
            action=data.action,
            resource=data.resource,
            access_level=data.access_level.value,
            scope=data.scope.value,
            is_system_permission=data.is_system_permission,
            requires_permissions=data.requires_permissions,
        )
        self.db.add(permission)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Permission {name!r} already exists", name=name)
        await self.db.refresh(permission)
        log.info(f"Permission {permission.name} created ({permission.id})")
        return permission

    async def get_permission(self, permission_id: str) -> Permission:
        result = await self.db.execute(
            select(Permission).where(Permission.id == permission_id, Permission.deleted_at.is_(None))
        )
        permission = result.scalar_one_or_none()
        if permission is None:
            raise NotFoundError("Permission not found", permission_id=permission_id)
        return permission

    async def get_by_name(self, name: str, include_deleted: bool = False) -> Optional[Permission]:
        stmt = select(Permission).where(Permission.name == name)
        if not include_deleted:
            stmt = stmt.where(Permission.deleted_at.is_(None))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_permissions(
        self,
        module: Optional[str] = None,
        access_level: Optional[str] = None,
        scope: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Permission]:
        stmt = select(Permission).where(Permission.deleted_at.is_(None))
        if module:
            stmt = stmt.where(Permission.module == module)
        if access_level:
            stmt = stmt.where(Permission.access_level == access_level)
        if scope:
            stmt = stmt.where(Permission.scope == scope)
        if is_active is not None:
            stmt = stmt.where(Permission.is_active == is_active)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                func.lower(Permission.name).like(pattern) | func.lower(Permission.display_name).like(pattern)
            )
        stmt = stmt.order_by(Permission.module, Permission.name).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_permission(self, permission_id: str, data: PermissionUpdate) -> Permission:
        permission = await self.get_permission(permission_id)
        changes = data.model_dump(exclude_unset=True)

        if permission.is_system_permission:
            touched = [f for f in IDENTITY_FIELDS if f in changes and changes[f] != getattr(permission, f)]
            if touched:
                raise ConflictError(
                    "Identity fields of a system permission cannot be changed",
                    permission_id=permission_id,
                    fields=touched,
                )

        new_name = changes.get("name")
        if new_name is None and any(f in changes for f in ("module", "action", "resource")):
            new_name = build_permission_name(
                changes.get("module", permission.module),
                changes.get("action", permission.action),
                changes.get("resource", permission.resource),
            )
        if new_name and new_name != permission.name:
            if await self.get_by_name(new_name, include_deleted=True) is not None:
                raise ConflictError(f"Permission {new_name!r} already exists", name=new_name)
            changes["name"] = new_name

        for field, value in changes.items():
            if hasattr(value, "value"):
                value = value.value
            setattr(permission, field, value)

        await self.db.commit()
        await self.db.refresh(permission)
        log.info(f"Permission {permission.name} updated: {sorted(changes)}")
        return permission

    async def delete_permission(self, permission_id: str) -> None:
        """Soft-delete a permission. Fails while any role still actively holds it directly."""
        permission = await self.get_permission(permission_id)
        if permission.is_system_permission:
            raise ConflictError("System permissions cannot be deleted", permission_id=permission_id)

        result = await self.db.execute(
            select(func.count(RolePermission.id)).where(
                RolePermission.permission_id == permission_id,
                RolePermission.is_active.is_(True),
                RolePermission.is_inherited.is_(False),
            )
        )
        in_use = result.scalar_one()
        if in_use:
            raise DependencyViolationError(
                "Permission is still granted to roles",
                permission_id=permission_id,
                active_grants=in_use,
            )

        now = self.clock.now()
        permission.deleted_at = now
        permission.is_active = False
        # Only inherited copies can remain at this point
        result = await self.db.execute(
            select(RolePermission).where(
                RolePermission.permission_id == permission_id, RolePermission.is_active.is_(True)
            )
        )
        for row in result.scalars().all():
            row.is_active = False
            row.revoked_at = now
            row.revocation_reason = "permission_deleted"
        permission.usage_count = 0
        await self.db.commit()
        log.info(f"Permission {permission.name} deleted")

    async def missing_dependencies(self, permission_id: str, held: Iterable[str]) -> List[str]:
        """Names in ``requires_permissions`` that are absent from ``held``."""
        permission = await self.get_permission(permission_id)
        held_names = set(held)
        return [name for name in (permission.requires_permissions or []) if name not in held_names]

    async def refresh_usage(self, permission_ids: Iterable[str]) -> None:
        """Recompute ``usage_count`` for the given permissions. Does not commit."""
        await self.db.flush()
        for permission_id in set(permission_ids):
            result = await self.db.execute(
                select(func.count(RolePermission.id)).where(
                    RolePermission.permission_id == permission_id, RolePermission.is_active.is_(True)
                )
            )
            permission = await self.db.get(Permission, permission_id)
            if permission is not None:
                permission.usage_count = result.scalar_one()

    async def statistics(self) -> Dict[str, object]:
        alive = Permission.deleted_at.is_(None)
        total = (await self.db.execute(select(func.count(Permission.id)).where(alive))).scalar_one()
        active = (
            await self.db.execute(select(func.count(Permission.id)).where(alive, Permission.is_active.is_(True)))
        ).scalar_one()
        system = (
            await self.db.execute(
                select(func.count(Permission.id)).where(alive, Permission.is_system_permission.is_(True))
            )
        ).scalar_one()
        by_module = await self.db.execute(
            select(Permission.module, func.count(Permission.id)).where(alive).group_by(Permission.module)
        )
        by_level = await self.db.execute(
            select(Permission.access_level, func.count(Permission.id)).where(alive).group_by(Permission.access_level)
        )
        return {
            "total": total,
            "active": active,
            "system": system,
            "by_module": {module: count for module, count in by_module.all()},
            "by_access_level": {level: count for level, count in by_level.all()},
        }
