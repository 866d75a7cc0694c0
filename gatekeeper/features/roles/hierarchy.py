"""
Bounded walks over the role tree.

The tree is stored as ``parent_role_id`` links. Every walk stops after
``max_depth`` steps so corrupted data can never loop forever.
"""
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.exceptions import NotFoundError
from gatekeeper.features.roles.models import Role
from gatekeeper.utils import get_logger


log = get_logger(__name__)


async def load_role(
    db: AsyncSession,
    role_id: str,
    include_deleted: bool = False,
    lock: bool = False,
) -> Role:
    stmt = select(Role).where(Role.id == role_id)
    if not include_deleted:
        stmt = stmt.where(Role.deleted_at.is_(None))
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    role = result.scalar_one_or_none()
    if role is None:
        raise NotFoundError("Role not found", role_id=role_id)
    return role


async def ancestor_chain(db: AsyncSession, role_id: str, max_depth: int) -> List[Role]:
    """
    The role followed by its ancestors, nearest first.

    Index in the returned list is the inheritance level. Deleted ancestors end
    the chain.
    """
    chain = [await load_role(db, role_id)]
    seen = {role_id}
    parent_id = chain[0].parent_role_id
    while parent_id is not None and len(chain) <= max_depth:
        if parent_id in seen:
            log.error(f"Cycle detected in role hierarchy at {parent_id}")
            break
        result = await db.execute(select(Role).where(Role.id == parent_id, Role.deleted_at.is_(None)))
        parent: Optional[Role] = result.scalar_one_or_none()
        if parent is None:
            break
        chain.append(parent)
        seen.add(parent.id)
        parent_id = parent.parent_role_id
    return chain


async def descendants(db: AsyncSession, role_id: str, max_depth: int) -> List[Tuple[Role, int]]:
    """Breadth-first walk below ``role_id``: (role, distance) pairs, nearest first."""
    found: List[Tuple[Role, int]] = []
    seen = {role_id}
    frontier = [role_id]
    distance = 0
    while frontier and distance < max_depth:
        distance += 1
        result = await db.execute(
            select(Role)
            .where(Role.parent_role_id.in_(frontier), Role.deleted_at.is_(None))
            .order_by(Role.name)
        )
        next_frontier = []
        for child in result.scalars().all():
            if child.id in seen:
                continue
            seen.add(child.id)
            found.append((child, distance))
            next_frontier.append(child.id)
        frontier = next_frontier
    return found


async def children(db: AsyncSession, role_id: str) -> List[Role]:
    result = await db.execute(
        select(Role).where(Role.parent_role_id == role_id, Role.deleted_at.is_(None)).order_by(Role.name)
    )
    return list(result.scalars().all())


async def subtree_height(db: AsyncSession, role_id: str, max_depth: int) -> int:
    """Distance from ``role_id`` to its deepest descendant (0 for a leaf)."""
    below = await descendants(db, role_id, max_depth + 1)
    return max((distance for _, distance in below), default=0)
