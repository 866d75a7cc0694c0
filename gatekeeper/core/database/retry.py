"""
Bounded retries for idempotent reads.

Mutations are never passed through here: a partially applied grant or sync
must surface to the caller instead of being replayed.
"""
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gatekeeper.core import config
from gatekeeper.core.exceptions import StorageUnavailableError
from gatekeeper.utils import get_logger

log = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, DBAPIError, TimeoutError, ConnectionError)


async def retry_read(
    operation: Callable[[], Awaitable[T]],
    attempts: int | None = None,
    max_wait: float = 2.0,
) -> T:
    """
    Run ``operation`` retrying transient storage errors with exponential backoff.

    Raises StorageUnavailableError once the attempts are exhausted.
    """
    retry_policy = AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=max_wait),
        stop=stop_after_attempt(attempts or config.DB_READ_RETRIES),
        reraise=True,
    )
    try:
        async for attempt in retry_policy:
            with attempt:
                return await operation()
    except TRANSIENT_ERRORS as e:
        log.error(f"Storage unavailable after retries: {e}")
        raise StorageUnavailableError("Storage temporarily unavailable, retry later") from e
    raise StorageUnavailableError("Storage temporarily unavailable, retry later")
