"""
Signed bearer tokens.

Access and refresh tokens are JWTs signed with different secrets, so one family
can never be replayed as the other. Expiry is checked against the injected
clock rather than PyJWT's wall clock.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import jwt

from gatekeeper.core import config
from gatekeeper.core.clock import Clock, to_timestamp
from gatekeeper.core.database.base import generate_ulid
from gatekeeper.core.exceptions import ExpiredError, InvalidSignatureError

ACCESS = "access"
REFRESH = "refresh"

REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sid", "jti", "type", "userId"]


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def fingerprint(token: str) -> str:
    """SHA-256 hex digest stored in place of the raw token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    def __init__(
        self,
        clock: Clock,
        access_secret: Optional[str] = None,
        refresh_secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self.clock = clock
        self.access_secret = access_secret or config.JWT_ACCESS_SECRET
        self.refresh_secret = refresh_secret or config.JWT_REFRESH_SECRET
        self.algorithm = algorithm or config.JWT_ALGORITHM
        self.issuer = issuer or config.JWT_ISSUER
        self.audience = audience or config.JWT_AUDIENCE
        if self.access_secret == self.refresh_secret:
            raise ValueError("Access and refresh tokens must use different secrets")

    def issue_access_token(
        self,
        user_id: str,
        session_id: str,
        roles: List[str],
        expires_at: datetime,
        permissions: Optional[List[str]] = None,
    ) -> str:
        claims = self._claims(ACCESS, user_id, session_id, roles, expires_at)
        if permissions is not None:
            claims["permissions"] = permissions
        return jwt.encode(claims, self.access_secret, algorithm=self.algorithm)

    def issue_refresh_token(self, user_id: str, session_id: str, roles: List[str], expires_at: datetime) -> str:
        claims = self._claims(REFRESH, user_id, session_id, roles, expires_at)
        return jwt.encode(claims, self.refresh_secret, algorithm=self.algorithm)

    def decode(self, token: str, token_type: str) -> Dict[str, Any]:
        """
        Verify a token of the given family and return its claims.

        Raises InvalidSignatureError for anything malformed, mis-signed or of
        the wrong family, and ExpiredError once ``exp`` has passed.
        """
        secret = self.access_secret if token_type == ACCESS else self.refresh_secret
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidTokenError as e:
            raise InvalidSignatureError(f"Invalid {token_type} token: {e}")

        if claims.get("type") != token_type:
            raise InvalidSignatureError(f"Expected {token_type} token, got {claims.get('type')}")
        if claims["exp"] <= to_timestamp(self.clock.now()):
            raise ExpiredError(f"{token_type.capitalize()} token expired", session_id=claims.get("sid"))
        return claims

    def _claims(
        self,
        token_type: str,
        user_id: str,
        session_id: str,
        roles: List[str],
        expires_at: datetime,
    ) -> Dict[str, Any]:
        return {
            "userId": user_id,
            "roles": list(roles),
            "type": token_type,
            "sid": session_id,
            "jti": generate_ulid(),
            "iat": to_timestamp(self.clock.now()),
            "exp": to_timestamp(expires_at),
            "iss": self.issuer,
            "aud": self.audience,
        }
