"""
Permission assignment ledger.

Grants and revocations of permissions on roles. Direct grants are written by
callers; inherited rows are materialized copies of ancestor grants, rebuilt by
``sync_inherited_permissions`` whenever the hierarchy or an ancestor's direct
grants change.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.core.clock import Clock, naive_utc
from gatekeeper.core.exceptions import ConflictError, ExpiredError, NotFoundError
from gatekeeper.features.permissions.models import Permission, RolePermission
from gatekeeper.features.permissions.catalog import PermissionCatalog
from gatekeeper.features.roles import hierarchy
from gatekeeper.features.roles.models import Role
from gatekeeper.utils import get_logger


log = get_logger(__name__)


class PermissionLedger:
    def __init__(self, db: AsyncSession, clock: Clock, max_depth: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.max_depth = max_depth if max_depth is not None else config.MAX_HIERARCHY_DEPTH
        self.catalog = PermissionCatalog(db, clock)

    # ========================================================================
    # Grants
    # ========================================================================

    async def assign_permission(
        self,
        role_id: str,
        permission_id: str,
        granted_by: Optional[str] = None,
        conditions: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> RolePermission:
        """
        Grant a permission directly to a role.

        An inactive row for the pair is reactivated and an inherited row is
        converted into a direct grant, so the pair never gets a second row.
        """
        try:
            row = await self._assign(role_id, permission_id, granted_by, conditions, expires_at)
            await self.resync_descendants(role_id)
            await self.catalog.refresh_usage([permission_id])
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Permission {permission_id} granted to role {role_id} by {granted_by}")
        return row

    async def _assign(
        self,
        role_id: str,
        permission_id: str,
        granted_by: Optional[str],
        conditions: Optional[Dict[str, Any]],
        expires_at: Optional[datetime],
    ) -> RolePermission:
        now = self.clock.now()
        if expires_at is not None:
            expires_at = naive_utc(expires_at)
            if expires_at <= now:
                raise ExpiredError("Expiration must be in the future", expires_at=expires_at.isoformat())

        await hierarchy.load_role(self.db, role_id)
        permission = await self.catalog.get_permission(permission_id)
        if not permission.is_active:
            raise NotFoundError("Permission is not active", permission_id=permission_id)

        row = await self._get_row(role_id, permission_id)
        if row is not None and row.is_active and not row.is_inherited:
            raise ConflictError(
                "Permission already assigned to role",
                role_id=role_id,
                permission_id=permission_id,
            )

        if row is None:
            row = RolePermission(role_id=role_id, permission_id=permission_id)
            self.db.add(row)

        row.is_active = True
        row.is_inherited = False
        row.inherited_from_role_id = None
        row.granted_by = granted_by
        row.granted_at = now
        row.conditions = conditions
        row.expires_at = expires_at
        row.revoked_by = None
        row.revoked_at = None
        row.revocation_reason = None
        await self.db.flush()
        return row

    async def revoke_permission(
        self,
        role_id: str,
        permission_id: str,
        revoked_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RolePermission:
        try:
            await hierarchy.load_role(self.db, role_id)
            row = await self._get_row(role_id, permission_id)
            if row is None or not row.is_active:
                raise NotFoundError(
                    "Permission is not assigned to role",
                    role_id=role_id,
                    permission_id=permission_id,
                )
            if row.is_inherited:
                source = await self.db.get(Role, row.inherited_from_role_id) if row.inherited_from_role_id else None
                raise ConflictError(
                    "Inherited permission must be revoked on the role that grants it",
                    role_id=role_id,
                    permission_id=permission_id,
                    source_role_id=row.inherited_from_role_id,
                    source_role=source.name if source else None,
                )

            row.is_active = False
            row.revoked_by = revoked_by
            row.revoked_at = self.clock.now()
            row.revocation_reason = reason
            await self.db.flush()

            await self.resync_role(role_id)
            await self.resync_descendants(role_id)
            await self.catalog.refresh_usage([permission_id])
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Permission {permission_id} revoked from role {role_id} by {revoked_by}: {reason}")
        return row

    async def bulk_assign_permissions(
        self,
        role_id: str,
        permission_ids: Iterable[str],
        granted_by: Optional[str] = None,
        conditions: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Grant several permissions in one transaction, reporting per-id outcomes."""
        assigned: List[str] = []
        skipped: List[str] = []
        errors: List[Dict[str, str]] = []
        try:
            await hierarchy.load_role(self.db, role_id)
            for permission_id in dict.fromkeys(permission_ids):
                try:
                    await self._assign(role_id, permission_id, granted_by, conditions, expires_at)
                except ConflictError:
                    skipped.append(permission_id)
                except (NotFoundError, ExpiredError) as e:
                    errors.append({"permission_id": permission_id, "error": e.message})
                else:
                    assigned.append(permission_id)
            if assigned:
                await self.resync_descendants(role_id)
                await self.catalog.refresh_usage(assigned)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Bulk grant on role {role_id}: {len(assigned)} assigned, {len(skipped)} skipped, {len(errors)} errors")
        return {"assigned": assigned, "skipped": skipped, "errors": errors}

    # ========================================================================
    # Inheritance sync
    # ========================================================================

    async def sync_inherited_permissions(self, role_id: str) -> Dict[str, int]:
        try:
            result = await self.resync_role(role_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result

    async def sync_descendants(self, role_id: str) -> Dict[str, int]:
        try:
            result = await self.resync_descendants(role_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result

    async def resync_descendants(self, role_id: str) -> Dict[str, int]:
        """Re-sync every descendant, nearest first. Does not commit."""
        totals = {"roles": 0, "added": 0, "removed": 0}
        for child, _ in await hierarchy.descendants(self.db, role_id, self.max_depth):
            result = await self.resync_role(child.id)
            totals["roles"] += 1
            totals["added"] += result["added"]
            totals["removed"] += result["removed"]
        return totals

    async def resync_role(self, role_id: str) -> Dict[str, int]:
        """
        Rebuild the inherited rows of one role inside the current transaction.

        Nearest ancestor wins when several grant the same permission. A direct
        active grant on the role blocks the inherited copy. A revoked direct
        row is turned into the inherited copy, so the role regains what its
        ancestors grant.
        """
        now = self.clock.now()
        await hierarchy.load_role(self.db, role_id, lock=True)

        result = await self.db.execute(select(RolePermission).where(RolePermission.role_id == role_id))
        rows = {row.permission_id: row for row in result.scalars().all()}

        previous: Dict[str, Optional[str]] = {}
        for permission_id, row in list(rows.items()):
            if row.is_inherited:
                if row.is_active:
                    previous[permission_id] = row.inherited_from_role_id
                await self.db.delete(row)
                del rows[permission_id]
        # Deletes must reach the database before re-inserting the same pairs
        await self.db.flush()

        inheritable = await self._inheritable(role_id, now)

        current: Dict[str, Optional[str]] = {}
        for permission_id, (source_role_id, source) in inheritable.items():
            row = rows.get(permission_id)
            if row is not None and row.is_active:
                continue
            if row is None:
                row = RolePermission(role_id=role_id, permission_id=permission_id)
                self.db.add(row)
            row.is_active = True
            row.is_inherited = True
            row.inherited_from_role_id = source_role_id
            row.granted_by = source.granted_by
            row.granted_at = now
            row.conditions = dict(source.conditions) if source.conditions else None
            row.expires_at = source.expires_at
            row.revoked_by = None
            row.revoked_at = None
            row.revocation_reason = None
            current[permission_id] = source_role_id
        await self.db.flush()

        added = sum(1 for pid, src in current.items() if previous.get(pid, "") != src)
        removed = sum(1 for pid, src in previous.items() if current.get(pid, "") != src)
        await self.catalog.refresh_usage(set(previous) | set(current))
        if added or removed:
            log.info(f"Synced inherited permissions of role {role_id}: +{added} -{removed}")
        return {"added": added, "removed": removed}

    async def _inheritable(self, role_id: str, now: datetime) -> Dict[str, tuple]:
        chain = await hierarchy.ancestor_chain(self.db, role_id, self.max_depth)
        ancestors = chain[1:]
        if not ancestors:
            return {}
        result = await self.db.execute(
            select(RolePermission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(
                RolePermission.role_id.in_([a.id for a in ancestors]),
                RolePermission.is_active.is_(True),
                RolePermission.is_inherited.is_(False),
                or_(RolePermission.expires_at.is_(None), RolePermission.expires_at > now),
                Permission.is_active.is_(True),
                Permission.deleted_at.is_(None),
            )
        )
        by_role: Dict[str, List[RolePermission]] = {}
        for row in result.scalars().all():
            by_role.setdefault(row.role_id, []).append(row)

        inheritable: Dict[str, tuple] = {}
        for ancestor in ancestors:
            for row in by_role.get(ancestor.id, []):
                inheritable.setdefault(row.permission_id, (ancestor.id, row))
        return inheritable

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def cleanup_expired_assignments(self) -> int:
        """Deactivate every active row whose expiry has passed."""
        now = self.clock.now()
        try:
            result = await self.db.execute(
                select(RolePermission).where(
                    RolePermission.is_active.is_(True),
                    RolePermission.expires_at.is_not(None),
                    RolePermission.expires_at <= now,
                )
            )
            expired = list(result.scalars().all())
            for row in expired:
                row.is_active = False
                row.revoked_at = now
                row.revocation_reason = "expired"
            await self.catalog.refresh_usage(row.permission_id for row in expired)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        if expired:
            log.info(f"Deactivated {len(expired)} expired permission assignments")
        return len(expired)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_role_permissions(
        self,
        role_id: str,
        include_inherited: bool = True,
        include_inactive: bool = False,
        include_expired: bool = False,
    ) -> List[Dict[str, Any]]:
        await hierarchy.load_role(self.db, role_id)
        stmt = (
            select(RolePermission, Permission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(RolePermission.role_id == role_id, Permission.deleted_at.is_(None))
        )
        if not include_inherited:
            stmt = stmt.where(RolePermission.is_inherited.is_(False))
        if not include_inactive:
            stmt = stmt.where(RolePermission.is_active.is_(True))
        if not include_expired:
            stmt = stmt.where(
                or_(RolePermission.expires_at.is_(None), RolePermission.expires_at > self.clock.now())
            )
        stmt = stmt.order_by(Permission.name)
        result = await self.db.execute(stmt)
        return [grant_detail(row, permission) for row, permission in result.all()]

    async def statistics(self) -> Dict[str, int]:
        now = self.clock.now()
        active = RolePermission.is_active.is_(True)

        async def count(*criteria) -> int:
            result = await self.db.execute(select(func.count(RolePermission.id)).where(*criteria))
            return result.scalar_one()

        async def distinct(column) -> int:
            result = await self.db.execute(select(func.count(func.distinct(column))).where(active))
            return result.scalar_one()

        return {
            "total": await count(),
            "active": await count(active),
            "inherited": await count(active, RolePermission.is_inherited.is_(True)),
            "direct": await count(active, RolePermission.is_inherited.is_(False)),
            "temporary": await count(active, RolePermission.expires_at.is_not(None)),
            "expired": await count(active, RolePermission.expires_at.is_not(None), RolePermission.expires_at <= now),
            "roles_with_permissions": await distinct(RolePermission.role_id),
            "permissions_in_use": await distinct(RolePermission.permission_id),
        }

    async def _get_row(self, role_id: str, permission_id: str) -> Optional[RolePermission]:
        result = await self.db.execute(
            select(RolePermission).where(
                RolePermission.role_id == role_id,
                RolePermission.permission_id == permission_id,
            )
        )
        return result.scalar_one_or_none()

    async def deactivate_role_rows(self, role_id: str, reason: str) -> Set[str]:
        """Deactivate every active row of a role. Does not commit."""
        now = self.clock.now()
        result = await self.db.execute(
            select(RolePermission).where(RolePermission.role_id == role_id, RolePermission.is_active.is_(True))
        )
        touched = set()
        for row in result.scalars().all():
            row.is_active = False
            row.revoked_at = now
            row.revocation_reason = reason
            touched.add(row.permission_id)
        await self.db.flush()
        return touched


def grant_detail(row: RolePermission, permission: Permission) -> Dict[str, Any]:
    return {
        "id": row.id,
        "role_id": row.role_id,
        "permission_id": row.permission_id,
        "permission": permission.name,
        "module": permission.module,
        "action": permission.action,
        "access_level": permission.access_level,
        "granted_by": row.granted_by,
        "granted_at": row.granted_at,
        "conditions": row.conditions,
        "expires_at": row.expires_at,
        "is_active": row.is_active,
        "is_inherited": row.is_inherited,
        "inherited_from_role_id": row.inherited_from_role_id,
        "revoked_by": row.revoked_by,
        "revoked_at": row.revoked_at,
        "revocation_reason": row.revocation_reason,
    }
