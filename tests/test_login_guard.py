"""Tests for the sliding-window login attempt guard."""
import asyncio

import pytest

from gatekeeper.core.exceptions import LoginLockedError
from gatekeeper.features.sessions.login_guard import InMemoryCounterStore, LoginAttemptGuard


class TestLoginAttemptGuard:
    def test_key_normalizes_identifier(self):
        assert LoginAttemptGuard.key_for("10.0.0.1", " Alice@Example.COM ") == "10.0.0.1:alice@example.com"
        assert LoginAttemptGuard.key_for(None, "bob") == "unknown:bob"

    @pytest.mark.asyncio
    async def test_locks_after_max_failures(self, guard):
        key = guard.key_for("10.0.0.1", "alice@example.com")
        for _ in range(2):
            await guard.record_failure(key)
            await guard.check(key)
        await guard.record_failure(key)
        with pytest.raises(LoginLockedError) as exc_info:
            await guard.check(key)
        assert exc_info.value.retry_after == 900
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_lock_lifts_when_oldest_failure_leaves_window(self, guard, clock):
        key = guard.key_for("10.0.0.1", "alice@example.com")
        await guard.record_failure(key)
        clock.advance(minutes=5)
        await guard.record_failure(key)
        await guard.record_failure(key)

        with pytest.raises(LoginLockedError) as exc_info:
            await guard.check(key)
        assert exc_info.value.retry_after == 600

        clock.advance(minutes=10)
        await guard.check(key)
        assert await guard.failures(key) == 2

    @pytest.mark.asyncio
    async def test_reset_clears_failures(self, guard):
        key = guard.key_for("10.0.0.1", "alice@example.com")
        await guard.record_failure(key)
        await guard.record_failure(key)
        await guard.reset(key)
        assert await guard.failures(key) == 0
        await guard.check(key)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, guard):
        locked = guard.key_for("10.0.0.1", "alice@example.com")
        other_ip = guard.key_for("10.0.0.2", "alice@example.com")
        for _ in range(3):
            await guard.record_failure(locked)
        with pytest.raises(LoginLockedError):
            await guard.check(locked)
        await guard.check(other_ip)

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self, guard):
        key = guard.key_for("10.0.0.1", "alice@example.com")
        counts = await asyncio.gather(*(guard.record_failure(key) for _ in range(10)))
        assert sorted(counts) == list(range(1, 11))
        assert await guard.failures(key) == 10

    @pytest.mark.asyncio
    async def test_idle_keys_are_forgotten(self, clock):
        store = InMemoryCounterStore(window_seconds=900, clock=clock)
        guard = LoginAttemptGuard(store, max_attempts=3)
        keys = [guard.key_for("10.0.0.1", f"user{n}@example.com") for n in range(200)]
        for key in keys:
            await guard.record_failure(key)
        assert len(store._events) == 200

        clock.advance(hours=1)
        for key in keys:
            await guard.check(key)
        assert store._events == {}
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_unknown_key_leaves_no_trace(self, clock):
        store = InMemoryCounterStore(window_seconds=900, clock=clock)
        assert await store.get("10.0.0.1:nobody") == 0
        assert await store.retry_after("10.0.0.1:nobody") == 0
        await store.reset("10.0.0.1:nobody")
        assert store._events == {}
        assert store._locks == {}
