"""Exception hierarchy for the authorization and session engine."""

from typing import Any, Dict


class GatekeeperError(Exception):
    """Base exception. ``context`` is returned to API callers."""

    status_code: int = 400

    def __init__(self, message: str = "An error occurred", **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)


class InvalidRequestError(GatekeeperError):
    """Raised when a request breaks a business validation rule."""
    status_code = 400


class NotFoundError(GatekeeperError):
    """Raised when a role, permission, session or user is absent."""
    status_code = 404


class ConflictError(GatekeeperError):
    """Raised on duplicate assignments, cyclic hierarchies and protected records."""
    status_code = 409


class DependencyViolationError(GatekeeperError):
    """Raised when a deletion is blocked by records that still depend on it."""
    status_code = 409


class CapacityExceededError(GatekeeperError):
    """Raised when a role's max_users or the concurrent-session limit is reached."""
    status_code = 409


class LoginLockedError(CapacityExceededError):
    """Raised when too many failed logins were recorded for an identifier."""
    status_code = 429

    def __init__(self, message: str = "Too many failed login attempts", retry_after: int = 0, **context: Any):
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after, **context)


class AuthenticationError(GatekeeperError):
    """Raised when credentials or tokens are not acceptable."""
    status_code = 401


class InvalidSignatureError(AuthenticationError):
    """Raised when a token fails cryptographic or structural verification."""


class ExpiredError(GatekeeperError):
    """Raised when a token, session or assignment is past its expiry."""
    status_code = 409


class RevokedError(AuthenticationError):
    """Raised when a session or assignment was explicitly revoked."""


class PermissionDeniedError(GatekeeperError):
    """Raised when an authenticated user lacks a permission."""
    status_code = 403


class StorageUnavailableError(GatekeeperError):
    """Raised when storage stays unreachable after bounded retries."""
    status_code = 503
