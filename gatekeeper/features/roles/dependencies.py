from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.clock import Clock, get_clock
from gatekeeper.core.database.engine import get_db
from gatekeeper.features.roles.service import RoleManager
from gatekeeper.features.user_roles.service import UserRoleManager


def get_role_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> RoleManager:
    return RoleManager(db, clock)


def get_user_role_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> UserRoleManager:
    return UserRoleManager(db, clock)
