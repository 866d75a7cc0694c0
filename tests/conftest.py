"""Shared fixtures: in-memory database, frozen clock and record factories."""
import os

# Must be set before gatekeeper.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("MAINTENANCE_INTERVAL_SECONDS", "0")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gatekeeper.core.database.engine import init_db
from gatekeeper.features.permissions.catalog import PermissionCatalog
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.permissions.models import AccessLevel, Permission
from gatekeeper.features.permissions.schemas import PermissionCreate
from gatekeeper.features.roles.models import Role
from gatekeeper.features.roles.schemas import RoleCreate
from gatekeeper.features.roles.service import RoleManager
from gatekeeper.features.sessions.login_guard import InMemoryCounterStore, LoginAttemptGuard
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.features.users.credentials import hash_password
from gatekeeper.features.users.models import User


START = datetime(2026, 1, 5, 9, 0, 0)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def roles(db, clock) -> RoleManager:
    return RoleManager(db, clock)


@pytest.fixture
def ledger(db, clock) -> PermissionLedger:
    return PermissionLedger(db, clock)


@pytest.fixture
def catalog(db, clock) -> PermissionCatalog:
    return PermissionCatalog(db, clock)


@pytest.fixture
def bindings(db, clock) -> UserRoleManager:
    return UserRoleManager(db, clock)


@pytest.fixture
def guard(clock) -> LoginAttemptGuard:
    return LoginAttemptGuard(InMemoryCounterStore(window_seconds=900, clock=clock), max_attempts=3)


@pytest.fixture
def make_user(db):
    async def factory(
        email: str = "alice@example.com",
        password: str = "correct horse battery",
        is_admin: bool = False,
        is_active: bool = True,
    ) -> User:
        user = User(
            email=email,
            name=email.split("@")[0].title(),
            password_hash=hash_password(password, rounds=4),
            is_admin=is_admin,
            is_active=is_active,
        )
        db.add(user)
        await db.commit()
        return user

    return factory


@pytest.fixture
def make_role(roles):
    async def factory(name: str, parent: Optional[Role] = None, **fields) -> Role:
        return await roles.create_role(
            RoleCreate(name=name, parent_role_id=parent.id if parent else None, **fields)
        )

    return factory


@pytest.fixture
def make_permission(catalog):
    async def factory(
        module: str,
        action: str,
        access_level: AccessLevel = AccessLevel.BASIC,
        **fields,
    ) -> Permission:
        return await catalog.create_permission(
            PermissionCreate(module=module, action=action, access_level=access_level, **fields)
        )

    return factory
