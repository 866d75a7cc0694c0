"""
Periodic expiry sweeps.

Each pass deactivates expired role grants and user-role bindings, and
expires overdue sessions. Passes run in their own database session.
"""
import asyncio
from typing import Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core import config
from gatekeeper.core.clock import Clock, system_clock
from gatekeeper.core.database.engine import AsyncSessionLocal
from gatekeeper.features.permissions.ledger import PermissionLedger
from gatekeeper.features.sessions.login_guard import get_login_guard
from gatekeeper.features.sessions.manager import SessionManager
from gatekeeper.features.sessions.tokens import TokenService
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.features.users.credentials import DatabaseCredentialVerifier
from gatekeeper.utils import get_logger


log = get_logger(__name__)


async def run_maintenance_once(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    clock: Clock = system_clock,
    purge_older_than_hours: Optional[int] = None,
) -> Dict[str, int]:
    async with session_factory() as db:
        grants = await PermissionLedger(db, clock).cleanup_expired_assignments()
        bindings = await UserRoleManager(db, clock).cleanup_expired_bindings()
        manager = SessionManager(db, clock, TokenService(clock), get_login_guard(), DatabaseCredentialVerifier(db))
        sessions = await manager.cleanup_expired_sessions(purge_older_than_hours)
    outcome = {
        "expired_grants": grants,
        "expired_bindings": bindings,
        "expired_sessions": sessions["expired"],
        "purged_sessions": sessions["purged"],
    }
    log.debug(f"Maintenance pass: {outcome}")
    return outcome


async def maintenance_loop(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_maintenance_once()
        except Exception:
            # Keep the loop alive, the next pass retries
            log.exception("Maintenance pass failed")


class MaintenanceTask:
    """Owns the background sweep task started with the application."""

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else config.MAINTENANCE_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.interval_seconds <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(maintenance_loop(self.interval_seconds))
        log.info(f"Maintenance loop started, every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Maintenance loop stopped")
