"""
Login attempt guard.

Failed logins are counted per ``ip:identifier`` in a sliding window. Once the
count reaches MAX_LOGIN_ATTEMPTS the key is locked until the oldest failure
slides out of the window.

Counters live behind a small store interface. ``InMemoryCounterStore`` is
single-process and is lost on restart; ``LimitsCounterStore`` keeps moving-window
counters in any storage the ``limits`` library supports (Redis, Memcached, ...)
so several workers share them.
"""
import asyncio
import math
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import timezone
from typing import Deque, Dict, Optional, Protocol

from limits import RateLimitItemPerSecond
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from gatekeeper.core import config
from gatekeeper.core.clock import Clock, system_clock
from gatekeeper.core.exceptions import LoginLockedError
from gatekeeper.utils import get_logger


log = get_logger(__name__)


class CounterStore(Protocol):
    async def increment(self, key: str) -> int:
        ...

    async def get(self, key: str) -> int:
        ...

    async def reset(self, key: str) -> None:
        ...

    async def retry_after(self, key: str) -> int:
        ...


class InMemoryCounterStore:
    """Timestamps of recent failures per key, guarded by a per-key lock.

    A key's entries are dropped once its window is empty and no coroutine is
    holding or waiting on its lock.
    """

    def __init__(self, window_seconds: int, clock: Clock = system_clock):
        self.window_seconds = window_seconds
        self.clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _now(self) -> float:
        return self.clock.now().replace(tzinfo=timezone.utc).timestamp()

    def _prune(self, key: str, now: float) -> Deque[float]:
        events = self._events.get(key, deque())
        while events and events[0] <= now - self.window_seconds:
            events.popleft()
        return events

    @asynccontextmanager
    async def _locked(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                if not self._events.get(key):
                    self._events.pop(key, None)
                    del self._locks[key]

    async def increment(self, key: str) -> int:
        async with self._locked(key):
            now = self._now()
            events = self._prune(key, now)
            events.append(now)
            self._events[key] = events
            return len(events)

    async def get(self, key: str) -> int:
        async with self._locked(key):
            return len(self._prune(key, self._now()))

    async def reset(self, key: str) -> None:
        async with self._locked(key):
            self._events.pop(key, None)

    async def retry_after(self, key: str) -> int:
        async with self._locked(key):
            now = self._now()
            events = self._prune(key, now)
            if not events:
                return 0
            return max(0, math.ceil(events[0] + self.window_seconds - now))


class LimitsCounterStore:
    """Moving-window counters on a ``limits`` async storage backend."""

    def __init__(self, uri: str, max_attempts: int, window_seconds: int):
        self.storage = storage_from_string(uri)
        self.limiter = MovingWindowRateLimiter(self.storage)
        self.item = RateLimitItemPerSecond(max_attempts, window_seconds)
        self.max_attempts = max_attempts

    async def increment(self, key: str) -> int:
        await self.limiter.hit(self.item, "login", key)
        return await self.get(key)

    async def get(self, key: str) -> int:
        stats = await self.limiter.get_window_stats(self.item, "login", key)
        return self.max_attempts - stats.remaining

    async def reset(self, key: str) -> None:
        await self.limiter.clear(self.item, "login", key)

    async def retry_after(self, key: str) -> int:
        stats = await self.limiter.get_window_stats(self.item, "login", key)
        return max(0, math.ceil(stats.reset_time - time.time()))


class LoginAttemptGuard:
    def __init__(self, store: CounterStore, max_attempts: Optional[int] = None):
        self.store = store
        self.max_attempts = max_attempts if max_attempts is not None else config.MAX_LOGIN_ATTEMPTS

    @staticmethod
    def key_for(ip_address: Optional[str], identifier: str) -> str:
        return f"{ip_address or 'unknown'}:{identifier.strip().lower()}"

    async def check(self, key: str) -> None:
        """Raise LoginLockedError while ``key`` is locked out."""
        if await self.store.get(key) >= self.max_attempts:
            retry_after = await self.store.retry_after(key)
            log.warning(f"Login locked for {key}, retry after {retry_after}s")
            raise LoginLockedError(retry_after=retry_after)

    async def record_failure(self, key: str) -> int:
        count = await self.store.increment(key)
        if count >= self.max_attempts:
            log.warning(f"Login attempts exhausted for {key} ({count}/{self.max_attempts})")
        else:
            log.info(f"Failed login for {key} ({count}/{self.max_attempts})")
        return count

    async def reset(self, key: str) -> None:
        await self.store.reset(key)

    async def failures(self, key: str) -> int:
        return await self.store.get(key)


def build_counter_store(clock: Clock = system_clock) -> CounterStore:
    window_seconds = config.LOGIN_ATTEMPT_WINDOW_MINUTES * 60
    if config.LOGIN_COUNTER_STORAGE == "memory":
        return InMemoryCounterStore(window_seconds, clock)
    return LimitsCounterStore(config.LOGIN_COUNTER_STORAGE, config.MAX_LOGIN_ATTEMPTS, window_seconds)


_guard: Optional[LoginAttemptGuard] = None


def get_login_guard() -> LoginAttemptGuard:
    """Process-wide guard; counters are shared across requests."""
    global _guard
    if _guard is None:
        _guard = LoginAttemptGuard(build_counter_store())
    return _guard
