"""
Session and token lifecycle.

A session row is created at login and holds SHA-256 fingerprints of the
current access and refresh tokens. Validation decodes the token, loads the
session named by its ``sid`` claim and requires it to be ACTIVE with a
matching fingerprint, so revocation takes effect on the very next request.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import select, func, delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from user_agents import parse as parse_ua

from gatekeeper.core import config
from gatekeeper.core.clock import Clock
from gatekeeper.core.database.base import generate_ulid
from gatekeeper.core.database.retry import retry_read
from gatekeeper.core.exceptions import (
    AuthenticationError,
    CapacityExceededError,
    ConflictError,
    ExpiredError,
    InvalidSignatureError,
    NotFoundError,
    RevokedError,
)
from gatekeeper.features.permissions.resolver import PermissionResolver
from gatekeeper.features.sessions.login_guard import LoginAttemptGuard
from gatekeeper.features.sessions.models import SessionStatus, UserSession
from gatekeeper.features.sessions.tokens import ACCESS, REFRESH, TokenPair, TokenService, fingerprint
from gatekeeper.features.user_roles.service import UserRoleManager
from gatekeeper.features.users.credentials import CredentialVerifier
from gatekeeper.features.users.models import User
from gatekeeper.utils import get_logger


log = get_logger(__name__)

TOKEN_ERRORS = (InvalidSignatureError, ExpiredError, RevokedError)


@dataclass
class SessionSettings:
    access_token_minutes: int = 15
    session_hours: int = 24
    remember_me_days: int = 30
    idle_timeout_minutes: int = 0
    touch_interval_seconds: int = 60
    max_sessions: int = 5
    overflow_policy: str = "evict_oldest"
    rotate_refresh_tokens: bool = True
    authz_mode: str = "live"

    @classmethod
    def from_config(cls) -> "SessionSettings":
        return cls(
            access_token_minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES,
            session_hours=config.SESSION_EXPIRE_HOURS,
            remember_me_days=config.REMEMBER_ME_EXPIRE_DAYS,
            idle_timeout_minutes=config.SESSION_IDLE_TIMEOUT_MINUTES,
            touch_interval_seconds=config.ACTIVITY_TOUCH_INTERVAL_SECONDS,
            max_sessions=config.MAX_CONCURRENT_SESSIONS,
            overflow_policy=config.SESSION_OVERFLOW_POLICY,
            rotate_refresh_tokens=config.ROTATE_REFRESH_TOKENS,
            authz_mode=config.AUTHZ_MODE,
        )


@dataclass
class AuthContext:
    """Outcome of a successful access-token validation."""
    user_id: str
    session_id: str
    roles: List[str]
    claims: Dict[str, Any]
    permissions: Optional[List[str]] = None


@dataclass
class LoginResult:
    user: User
    session: UserSession
    tokens: TokenPair
    roles: List[str] = field(default_factory=list)


def describe_client(user_agent: Optional[str]) -> Dict[str, Optional[str]]:
    if not user_agent:
        return {"device_type": None, "device": None, "browser": None}
    ua = parse_ua(user_agent)
    if ua.is_mobile:
        device_type = "mobile"
    elif ua.is_tablet:
        device_type = "tablet"
    elif ua.is_bot:
        device_type = "bot"
    else:
        device_type = "desktop"
    return {
        "device_type": device_type,
        "device": f"{ua.os.family} {ua.os.version_string}".strip(),
        "browser": f"{ua.browser.family} {ua.browser.version_string}".strip(),
    }


class SessionManager:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock,
        tokens: TokenService,
        guard: LoginAttemptGuard,
        verifier: CredentialVerifier,
        settings: Optional[SessionSettings] = None,
    ):
        self.db = db
        self.clock = clock
        self.tokens = tokens
        self.guard = guard
        self.verifier = verifier
        self.settings = settings or SessionSettings.from_config()
        self.bindings = UserRoleManager(db, clock)
        self.resolver = PermissionResolver(db, clock)

    # ========================================================================
    # Login
    # ========================================================================

    async def login(
        self,
        identifier: str,
        secret: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        key = self.guard.key_for(ip_address, identifier)
        await self.guard.check(key)

        user = await self.verifier.verify(identifier, secret)
        if user is None:
            await self.guard.record_failure(key)
            log.warning(f"Failed login for {identifier!r} from {ip_address}")
            raise AuthenticationError("Invalid credentials")
        await self.guard.reset(key)

        now = self.clock.now()
        try:
            await self._enforce_session_limit(user.id, now)

            roles = await self.bindings.active_role_ids(user.id)
            session_id = generate_ulid()
            if remember_me:
                expires_at = now + timedelta(days=self.settings.remember_me_days)
            else:
                expires_at = now + timedelta(hours=self.settings.session_hours)
            pair = await self._issue_pair(user.id, session_id, roles, expires_at)

            session = UserSession(
                id=session_id,
                user_id=user.id,
                access_token_hash=fingerprint(pair.access_token),
                refresh_token_hash=fingerprint(pair.refresh_token),
                ip_address=ip_address,
                last_ip_address=ip_address,
                user_agent=user_agent,
                location=location,
                status=SessionStatus.ACTIVE.value,
                is_active=True,
                is_remember_me=remember_me,
                created_at=now,
                last_activity_at=now,
                expires_at=expires_at,
                **describe_client(user_agent),
            )
            self.db.add(session)
            user.last_login_at = now
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"User {user.id} logged in, session {session_id} until {expires_at.isoformat()}")
        return LoginResult(user=user, session=session, tokens=pair, roles=roles)

    async def _issue_pair(
        self,
        user_id: str,
        session_id: str,
        roles: List[str],
        session_expires_at: datetime,
    ) -> TokenPair:
        now = self.clock.now()
        access_expires_at = min(now + timedelta(minutes=self.settings.access_token_minutes), session_expires_at)
        permissions = None
        if self.settings.authz_mode == "snapshot":
            permissions = await self.resolver.permission_names_for_user(user_id)
        return TokenPair(
            access_token=self.tokens.issue_access_token(user_id, session_id, roles, access_expires_at, permissions),
            refresh_token=self.tokens.issue_refresh_token(user_id, session_id, roles, session_expires_at),
            access_expires_at=access_expires_at,
            refresh_expires_at=session_expires_at,
        )

    async def _enforce_session_limit(self, user_id: str, now: datetime) -> None:
        if self.settings.max_sessions <= 0:
            return
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.status == SessionStatus.ACTIVE.value)
            .order_by(UserSession.created_at, UserSession.id)
        )
        active = []
        for session in result.scalars().all():
            if session.expires_at <= now:
                self._mark(session, SessionStatus.EXPIRED, "expired", now)
            else:
                active.append(session)

        overflow = len(active) - self.settings.max_sessions + 1
        if overflow <= 0:
            return
        if self.settings.overflow_policy == "reject":
            raise CapacityExceededError(
                "Maximum number of concurrent sessions reached",
                user_id=user_id,
                max_sessions=self.settings.max_sessions,
            )
        for session in active[:overflow]:
            self._mark(session, SessionStatus.REVOKED, "session_limit", now)
            log.info(f"Session {session.id} of user {user_id} evicted by session limit")
        await self.db.flush()

    # ========================================================================
    # Validation
    # ========================================================================

    async def validate_access_token(self, token: str, ip_address: Optional[str] = None) -> AuthContext:
        try:
            claims = self.tokens.decode(token, ACCESS)
            session = await self._load_session(claims)
            await self._require_live(session)
            if session.access_token_hash != fingerprint(token):
                raise RevokedError("Access token was superseded", session_id=session.id)
        except TOKEN_ERRORS as e:
            log.warning(f"Access token rejected ({type(e).__name__}): {e.message}")
            raise

        await self.touch_activity(session.id, ip_address)
        return AuthContext(
            user_id=claims["userId"],
            session_id=session.id,
            roles=list(claims.get("roles", [])),
            claims=claims,
            permissions=claims.get("permissions"),
        )

    async def _load_session(self, claims: Dict[str, Any]) -> UserSession:
        async def load():
            result = await self.db.execute(
                select(UserSession)
                .where(UserSession.id == claims["sid"])
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

        session = await retry_read(load)
        if session is None:
            raise RevokedError("Session not found", session_id=claims["sid"])
        if session.user_id != claims["userId"]:
            raise InvalidSignatureError("Token subject does not match session", session_id=session.id)
        return session

    async def _require_live(self, session: UserSession) -> None:
        """Raise unless the session is ACTIVE, expiring it when its time is up."""
        if session.status == SessionStatus.REVOKED.value:
            raise RevokedError("Session revoked", session_id=session.id, reason=session.revoked_reason)
        if session.status == SessionStatus.EXPIRED.value:
            raise ExpiredError("Session expired", session_id=session.id)

        now = self.clock.now()
        reason = None
        if session.expires_at <= now:
            reason = "expired"
        elif self.settings.idle_timeout_minutes > 0:
            idle_limit = session.last_activity_at + timedelta(minutes=self.settings.idle_timeout_minutes)
            if idle_limit <= now:
                reason = "idle_timeout"
        if reason is not None:
            self._mark(session, SessionStatus.EXPIRED, reason, now)
            await self.db.commit()
            raise ExpiredError("Session expired", session_id=session.id, reason=reason)

    async def touch_activity(self, session_id: str, ip_address: Optional[str] = None) -> bool:
        """
        Record activity on a session, at most once per touch interval.

        Best effort: storage errors are logged and never reach the caller.
        """
        try:
            session = await self.db.get(UserSession, session_id)
            if session is None or session.status != SessionStatus.ACTIVE.value:
                return False
            now = self.clock.now()
            elapsed = (now - session.last_activity_at).total_seconds()
            ip_changed = ip_address is not None and ip_address != session.last_ip_address
            if elapsed < self.settings.touch_interval_seconds and not ip_changed:
                return False
            session.last_activity_at = now
            if ip_address is not None:
                session.last_ip_address = ip_address
            await self.db.commit()
            return True
        except SQLAlchemyError as e:
            log.warning(f"Activity touch failed for session {session_id}: {e}")
            await self.db.rollback()
            return False

    # ========================================================================
    # Refresh and logout
    # ========================================================================

    async def refresh(self, refresh_token: str, ip_address: Optional[str] = None) -> TokenPair:
        """
        Issue a new access token (and a new refresh token when rotation is on).

        Presenting a refresh token that was already rotated away revokes the
        whole session.
        """
        try:
            claims = self.tokens.decode(refresh_token, REFRESH)
            session = await self._load_session(claims)
            await self._require_live(session)
            if session.refresh_token_hash != fingerprint(refresh_token):
                self._mark(session, SessionStatus.REVOKED, "refresh_token_reuse", self.clock.now())
                await self.db.commit()
                log.warning(f"Refresh token reuse detected, session {session.id} revoked")
                raise RevokedError("Refresh token reuse detected", session_id=session.id)
            user = await self.db.get(User, session.user_id)
            if user is None or not user.is_active:
                self._mark(session, SessionStatus.REVOKED, "user_deactivated", self.clock.now())
                await self.db.commit()
                raise RevokedError("User is not active", session_id=session.id)
        except TOKEN_ERRORS as e:
            log.warning(f"Refresh token rejected ({type(e).__name__}): {e.message}")
            raise

        now = self.clock.now()
        try:
            user_id = session.user_id
            roles = await self.bindings.active_role_ids(user_id)
            pair = await self._issue_pair(user_id, session.id, roles, session.expires_at)
            session.access_token_hash = fingerprint(pair.access_token)
            if self.settings.rotate_refresh_tokens:
                session.refresh_token_hash = fingerprint(pair.refresh_token)
            else:
                pair.refresh_token = refresh_token
            session.last_activity_at = now
            if ip_address is not None:
                session.last_ip_address = ip_address
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Tokens refreshed for session {session.id}")
        return pair

    async def logout(self, access_token: str, all_sessions: bool = False) -> int:
        context = await self.validate_access_token(access_token)
        if all_sessions:
            return await self.revoke_all_sessions(context.user_id, reason="logout_all")
        await self.revoke_session(context.session_id, context.user_id, reason="logout")
        return 1

    # ========================================================================
    # Revocation
    # ========================================================================

    async def revoke_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        reason: str = "revoked",
    ) -> UserSession:
        try:
            session = await self.db.get(UserSession, session_id)
            if session is None or (user_id is not None and session.user_id != user_id):
                raise NotFoundError("Session not found", session_id=session_id)
            if session.status != SessionStatus.ACTIVE.value:
                raise ConflictError(
                    f"Session is already {session.status}",
                    session_id=session_id,
                    status=session.status,
                )
            self._mark(session, SessionStatus.REVOKED, reason, self.clock.now())
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Session {session_id} revoked: {reason}")
        return session

    async def revoke_all_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = "logout_all",
    ) -> int:
        now = self.clock.now()
        try:
            stmt = select(UserSession).where(
                UserSession.user_id == user_id,
                UserSession.status == SessionStatus.ACTIVE.value,
            )
            if except_session_id is not None:
                stmt = stmt.where(UserSession.id != except_session_id)
            result = await self.db.execute(stmt)
            sessions = list(result.scalars().all())
            for session in sessions:
                self._mark(session, SessionStatus.REVOKED, reason, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        log.info(f"Revoked {len(sessions)} sessions of user {user_id}: {reason}")
        return len(sessions)

    def _mark(self, session: UserSession, status: SessionStatus, reason: str, now: datetime) -> None:
        session.status = status.value
        session.is_active = False
        session.revoked_reason = reason
        if status is SessionStatus.REVOKED:
            session.revoked_at = now

    # ========================================================================
    # Queries and maintenance
    # ========================================================================

    async def get_user_sessions(self, user_id: str, include_inactive: bool = False) -> List[UserSession]:
        stmt = select(UserSession).where(UserSession.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(
                UserSession.status == SessionStatus.ACTIVE.value,
                UserSession.expires_at > self.clock.now(),
            )
        stmt = stmt.order_by(UserSession.last_activity_at.desc())
        result = await retry_read(lambda: self.db.execute(stmt))
        return list(result.scalars().all())

    async def cleanup_expired_sessions(self, purge_older_than_hours: Optional[int] = None) -> Dict[str, int]:
        """Expire ACTIVE sessions past their lifetime or idle limit; optionally purge old ended ones."""
        now = self.clock.now()
        expired = 0
        purged = 0
        try:
            criteria = [UserSession.expires_at <= now]
            if self.settings.idle_timeout_minutes > 0:
                idle_cutoff = now - timedelta(minutes=self.settings.idle_timeout_minutes)
                criteria.append(UserSession.last_activity_at <= idle_cutoff)
            result = await self.db.execute(
                select(UserSession).where(UserSession.status == SessionStatus.ACTIVE.value, or_(*criteria))
            )
            for session in result.scalars().all():
                reason = "expired" if session.expires_at <= now else "idle_timeout"
                self._mark(session, SessionStatus.EXPIRED, reason, now)
                expired += 1

            if purge_older_than_hours is not None:
                cutoff = now - timedelta(hours=purge_older_than_hours)
                await self.db.flush()
                outcome = await self.db.execute(
                    delete(UserSession)
                    .where(
                        UserSession.status != SessionStatus.ACTIVE.value,
                        func.coalesce(UserSession.revoked_at, UserSession.expires_at) <= cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
                purged = outcome.rowcount or 0
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        if expired or purged:
            log.info(f"Session cleanup: {expired} expired, {purged} purged")
        return {"expired": expired, "purged": purged}

    async def statistics(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        now = self.clock.now()
        scope = [UserSession.user_id == user_id] if user_id else []
        live = [UserSession.status == SessionStatus.ACTIVE.value, UserSession.expires_at > now]

        async def count(*criteria) -> int:
            result = await self.db.execute(select(func.count(UserSession.id)).where(*scope, *criteria))
            return result.scalar_one()

        by_device = await self.db.execute(
            select(UserSession.device_type, func.count(UserSession.id))
            .where(*scope, *live)
            .group_by(UserSession.device_type)
        )
        users = await self.db.execute(
            select(func.count(func.distinct(UserSession.user_id))).where(*scope, *live)
        )
        return {
            "total": await count(),
            "active": await count(*live),
            "expired": await count(
                or_(
                    UserSession.status == SessionStatus.EXPIRED.value,
                    (UserSession.status == SessionStatus.ACTIVE.value) & (UserSession.expires_at <= now),
                )
            ),
            "revoked": await count(UserSession.status == SessionStatus.REVOKED.value),
            "remember_me": await count(*live, UserSession.is_remember_me.is_(True)),
            "users_with_sessions": users.scalar_one(),
            "by_device_type": {(device or "unknown"): total for device, total in by_device.all()},
        }
