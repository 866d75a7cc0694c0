"""Tests for the session and token lifecycle."""
from datetime import timedelta

import pytest

from gatekeeper.core.exceptions import (
    AuthenticationError,
    CapacityExceededError,
    ConflictError,
    ExpiredError,
    InvalidSignatureError,
    LoginLockedError,
    NotFoundError,
    RevokedError,
)
from gatekeeper.features.sessions.manager import SessionManager, SessionSettings, describe_client
from gatekeeper.features.sessions.models import SessionStatus
from gatekeeper.features.sessions.tokens import ACCESS, TokenService, fingerprint
from gatekeeper.features.users.credentials import DatabaseCredentialVerifier


PASSWORD = "correct horse battery"
CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


@pytest.fixture
def token_service(clock) -> TokenService:
    return TokenService(clock, access_secret="access-test-secret", refresh_secret="refresh-test-secret")


@pytest.fixture
def make_manager(db, clock, token_service, guard):
    def factory(**settings) -> SessionManager:
        return SessionManager(
            db,
            clock,
            token_service,
            guard,
            DatabaseCredentialVerifier(db),
            SessionSettings(**settings),
        )

    return factory


@pytest.fixture
def sessions(make_manager) -> SessionManager:
    return make_manager()


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_creates_session(self, sessions, token_service, make_user, make_role, bindings, clock):
        role = await make_role("editor")
        user = await make_user()
        await bindings.assign_role(user.id, role.id)

        result = await sessions.login(
            "Alice@Example.com", PASSWORD, ip_address="10.0.0.1", user_agent=CHROME_WINDOWS
        )
        assert result.user.id == user.id
        assert result.roles == [role.id]
        assert result.session.status == SessionStatus.ACTIVE.value
        assert result.session.device_type == "desktop"
        assert result.session.access_token_hash == fingerprint(result.tokens.access_token)
        assert result.user.last_login_at == clock.now()

        claims = token_service.decode(result.tokens.access_token, ACCESS)
        assert claims["sid"] == result.session.id
        assert claims["userId"] == user.id
        assert "permissions" not in claims

    @pytest.mark.asyncio
    async def test_default_lifetime(self, sessions, make_user, clock):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        assert not result.session.is_remember_me
        assert result.session.status == SessionStatus.ACTIVE.value
        assert result.session.expires_at == clock.now() + timedelta(hours=24)
        assert result.tokens.refresh_expires_at == result.session.expires_at
        assert result.tokens.access_expires_at == clock.now() + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_remember_me_extends_session(self, sessions, make_user, clock):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD, remember_me=True)
        assert result.session.is_remember_me
        assert (result.session.expires_at - clock.now()).days == 30

    @pytest.mark.asyncio
    async def test_wrong_password(self, sessions, make_user):
        await make_user()
        with pytest.raises(AuthenticationError):
            await sessions.login("alice@example.com", "wrong password")

    @pytest.mark.asyncio
    async def test_inactive_user_cannot_log_in(self, sessions, make_user):
        await make_user(is_active=False)
        with pytest.raises(AuthenticationError):
            await sessions.login("alice@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_lockout_after_repeated_failures(self, sessions, guard, make_user):
        await make_user()
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await sessions.login("alice@example.com", "wrong password", ip_address="10.0.0.1")
        with pytest.raises(LoginLockedError):
            await sessions.login("alice@example.com", PASSWORD, ip_address="10.0.0.1")
        # other source addresses are unaffected
        result = await sessions.login("alice@example.com", PASSWORD, ip_address="10.0.0.2")
        assert result.session.ip_address == "10.0.0.2"

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, sessions, guard, make_user):
        await make_user()
        with pytest.raises(AuthenticationError):
            await sessions.login("alice@example.com", "wrong password", ip_address="10.0.0.1")
        await sessions.login("alice@example.com", PASSWORD, ip_address="10.0.0.1")
        assert await guard.failures(guard.key_for("10.0.0.1", "alice@example.com")) == 0

    @pytest.mark.asyncio
    async def test_snapshot_mode_embeds_permissions(
        self, make_manager, token_service, make_user, make_role, make_permission, ledger, bindings
    ):
        role = await make_role("editor")
        perm = await make_permission("orders", "read")
        await ledger.assign_permission(role.id, perm.id)
        user = await make_user()
        await bindings.assign_role(user.id, role.id)

        manager = make_manager(authz_mode="snapshot")
        result = await manager.login("alice@example.com", PASSWORD)
        claims = token_service.decode(result.tokens.access_token, ACCESS)
        assert claims["permissions"] == ["orders.read"]

        context = await manager.validate_access_token(result.tokens.access_token)
        assert context.permissions == ["orders.read"]


class TestSessionLimits:
    @pytest.mark.asyncio
    async def test_oldest_session_is_evicted(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(max_sessions=2)
        first = await manager.login("alice@example.com", PASSWORD)
        first_token = first.tokens.access_token
        clock.advance(seconds=5)
        await manager.login("alice@example.com", PASSWORD)
        clock.advance(seconds=5)
        await manager.login("alice@example.com", PASSWORD)

        with pytest.raises(RevokedError):
            await manager.validate_access_token(first_token)
        assert len(await manager.get_user_sessions(first.user.id)) == 2

    @pytest.mark.asyncio
    async def test_reject_policy(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(max_sessions=1, overflow_policy="reject")
        await manager.login("alice@example.com", PASSWORD)
        with pytest.raises(CapacityExceededError):
            await manager.login("alice@example.com", PASSWORD)


class TestValidation:
    @pytest.mark.asyncio
    async def test_valid_token(self, sessions, make_user):
        user = await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        context = await sessions.validate_access_token(result.tokens.access_token)
        assert context.user_id == user.id
        assert context.session_id == result.session.id
        assert context.permissions is None

    @pytest.mark.asyncio
    async def test_revoked_session_rejects_token(self, sessions, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        token, session_id = result.tokens.access_token, result.session.id
        await sessions.revoke_session(session_id, reason="admin_revoked")
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(token)

    @pytest.mark.asyncio
    async def test_expired_access_token(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(access_token_minutes=15)
        result = await manager.login("alice@example.com", PASSWORD)
        clock.advance(minutes=16)
        with pytest.raises(ExpiredError):
            await manager.validate_access_token(result.tokens.access_token)

    @pytest.mark.asyncio
    async def test_idle_timeout_expires_session(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(access_token_minutes=60, idle_timeout_minutes=30)
        result = await manager.login("alice@example.com", PASSWORD)
        token, user_id = result.tokens.access_token, result.user.id

        clock.advance(minutes=31)
        with pytest.raises(ExpiredError):
            await manager.validate_access_token(token)
        [session] = await manager.get_user_sessions(user_id, include_inactive=True)
        assert session.status == SessionStatus.EXPIRED.value
        assert session.revoked_reason == "idle_timeout"

    @pytest.mark.asyncio
    async def test_activity_keeps_session_alive(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(access_token_minutes=120, idle_timeout_minutes=30)
        result = await manager.login("alice@example.com", PASSWORD)
        token = result.tokens.access_token
        for _ in range(3):
            clock.advance(minutes=20)
            await manager.validate_access_token(token)

    @pytest.mark.asyncio
    async def test_touch_is_throttled(self, sessions, make_user, clock):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD, ip_address="10.0.0.1")
        session_id = result.session.id

        assert not await sessions.touch_activity(session_id)
        assert await sessions.touch_activity(session_id, ip_address="10.0.0.9")
        clock.advance(seconds=61)
        assert await sessions.touch_activity(session_id)
        assert result.session.last_activity_at == clock.now()
        assert result.session.last_ip_address == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_garbage_token(self, sessions):
        with pytest.raises(InvalidSignatureError):
            await sessions.validate_access_token("not-a-token")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_issues_new_pair(self, sessions, make_user, clock):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        old = result.tokens
        clock.advance(minutes=5)

        pair = await sessions.refresh(old.refresh_token)
        assert pair.refresh_token != old.refresh_token
        assert pair.refresh_expires_at == result.session.expires_at
        await sessions.validate_access_token(pair.access_token)
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(old.access_token)

    @pytest.mark.asyncio
    async def test_reuse_of_rotated_token_revokes_session(self, sessions, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        old_refresh, user_id = result.tokens.refresh_token, result.user.id
        pair = await sessions.refresh(old_refresh)

        with pytest.raises(RevokedError):
            await sessions.refresh(old_refresh)
        [session] = await sessions.get_user_sessions(user_id, include_inactive=True)
        assert session.status == SessionStatus.REVOKED.value
        assert session.revoked_reason == "refresh_token_reuse"
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(pair.access_token)

    @pytest.mark.asyncio
    async def test_refresh_without_rotation(self, make_manager, make_user):
        await make_user()
        manager = make_manager(rotate_refresh_tokens=False)
        result = await manager.login("alice@example.com", PASSWORD)
        pair = await manager.refresh(result.tokens.refresh_token)
        assert pair.refresh_token == result.tokens.refresh_token
        again = await manager.refresh(result.tokens.refresh_token)
        await manager.validate_access_token(again.access_token)

    @pytest.mark.asyncio
    async def test_deactivated_user_cannot_refresh(self, sessions, db, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        user_id, refresh_token = result.user.id, result.tokens.refresh_token
        result.user.is_active = False
        await db.commit()

        with pytest.raises(RevokedError):
            await sessions.refresh(refresh_token)
        [session] = await sessions.get_user_sessions(user_id, include_inactive=True)
        assert session.status == SessionStatus.REVOKED.value
        assert session.revoked_reason == "user_deactivated"
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(result.tokens.access_token)

    @pytest.mark.asyncio
    async def test_refresh_picks_up_new_roles(self, sessions, token_service, make_user, make_role, bindings):
        user = await make_user()
        user_id = user.id
        result = await sessions.login("alice@example.com", PASSWORD)
        role = await make_role("editor")
        await bindings.assign_role(user_id, role.id)

        pair = await sessions.refresh(result.tokens.refresh_token)
        assert token_service.decode(pair.access_token, ACCESS)["roles"] == [role.id]


class TestLogoutAndRevocation:
    @pytest.mark.asyncio
    async def test_logout_revokes_current_session(self, sessions, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        token = result.tokens.access_token
        assert await sessions.logout(token) == 1
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(token)

    @pytest.mark.asyncio
    async def test_logout_everywhere(self, sessions, make_user, clock):
        await make_user()
        first = await sessions.login("alice@example.com", PASSWORD)
        clock.advance(seconds=1)
        second = await sessions.login("alice@example.com", PASSWORD)
        assert await sessions.logout(second.tokens.access_token, all_sessions=True) == 2
        with pytest.raises(RevokedError):
            await sessions.validate_access_token(first.tokens.access_token)

    @pytest.mark.asyncio
    async def test_revoke_all_keeps_current(self, sessions, make_user, clock):
        await make_user()
        first = await sessions.login("alice@example.com", PASSWORD)
        clock.advance(seconds=1)
        second = await sessions.login("alice@example.com", PASSWORD)
        revoked = await sessions.revoke_all_sessions(first.user.id, except_session_id=second.session.id)
        assert revoked == 1
        await sessions.validate_access_token(second.tokens.access_token)

    @pytest.mark.asyncio
    async def test_revoke_twice_conflicts(self, sessions, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        session_id = result.session.id
        await sessions.revoke_session(session_id)
        with pytest.raises(ConflictError):
            await sessions.revoke_session(session_id)

    @pytest.mark.asyncio
    async def test_revoke_other_users_session(self, sessions, make_user):
        await make_user()
        result = await sessions.login("alice@example.com", PASSWORD)
        with pytest.raises(NotFoundError):
            await sessions.revoke_session(result.session.id, user_id="someone-else")


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_cleanup_expires_and_purges(self, make_manager, make_user, clock):
        await make_user()
        manager = make_manager(session_hours=1)
        await manager.login("alice@example.com", PASSWORD)
        clock.advance(seconds=1)
        live = await manager.login("alice@example.com", PASSWORD, remember_me=True)
        live_id = live.session.id

        clock.advance(hours=2)
        assert await manager.cleanup_expired_sessions() == {"expired": 1, "purged": 0}

        clock.advance(hours=30)
        assert await manager.cleanup_expired_sessions(purge_older_than_hours=24) == {"expired": 0, "purged": 1}
        remaining = await manager.get_user_sessions(live.user.id, include_inactive=True)
        assert [s.id for s in remaining] == [live_id]

    @pytest.mark.asyncio
    async def test_statistics(self, sessions, make_user, clock):
        await make_user()
        first = await sessions.login("alice@example.com", PASSWORD, user_agent=IPHONE)
        clock.advance(seconds=1)
        await sessions.login("alice@example.com", PASSWORD, user_agent=CHROME_WINDOWS, remember_me=True)
        await sessions.revoke_session(first.session.id)

        stats = await sessions.statistics()
        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["revoked"] == 1
        assert stats["remember_me"] == 1
        assert stats["users_with_sessions"] == 1
        assert stats["by_device_type"] == {"desktop": 1}


class TestDescribeClient:
    def test_no_user_agent(self):
        assert describe_client(None) == {"device_type": None, "device": None, "browser": None}

    @pytest.mark.parametrize(
        "user_agent, device_type",
        [(CHROME_WINDOWS, "desktop"), (IPHONE, "mobile"), (GOOGLEBOT, "bot")],
    )
    def test_device_types(self, user_agent, device_type):
        assert describe_client(user_agent)["device_type"] == device_type

    def test_browser_and_os(self):
        info = describe_client(CHROME_WINDOWS)
        assert info["browser"].startswith("Chrome 120")
        assert info["device"].startswith("Windows")
