"""
Password hashing and credential verification.
"""
from typing import Optional, Protocol
import bcrypt
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core import config
from gatekeeper.features.users.models import User


# bcrypt only looks at the first 72 bytes
BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_encode(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class CredentialVerifier(Protocol):
    async def verify(self, identifier: str, secret: str) -> Optional[User]:
        ...


class DatabaseCredentialVerifier:
    """Checks an e-mail/password pair against the bcrypt hash on the users table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def verify(self, identifier: str, secret: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(func.lower(User.email) == identifier.strip().lower())
        )
        user = result.scalar_one_or_none()
        if user is None or not user.is_active:
            return None
        if not verify_password(secret, user.password_hash):
            return None
        return user
