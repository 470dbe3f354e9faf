"""Bounded retry with exponential backoff for transient store errors."""
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, PoolTimeoutError, DBAPIError)


def is_transient(exc: BaseException) -> bool:
    """
    Classify a store error as transient (worth retrying).

    Lock contention, dropped connections, serialization failures and pool
    exhaustion are transient. Integrity and programming errors are not.
    """
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        # psycopg2 exposes SQLSTATE as pgcode; 40001 serialization, 40P01 deadlock
        pgcode = getattr(exc.orig, "pgcode", None)
        return pgcode in ("40001", "40P01")
    return False


def retry_transient(
    func: Callable[[], T],
    max_attempts: int = 3,
    backoff_seconds: float = 0.1,
    description: str = "operation",
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds or ``max_attempts`` is reached.

    Only transient errors are retried; anything else propagates immediately.
    The last transient error is re-raised once attempts are exhausted.

    Args:
        func: Zero-argument callable to run
        max_attempts: Total attempts including the first
        backoff_seconds: Base delay; attempt n waits backoff_seconds * 2 ** (n - 1)
        description: Name used in log events
        on_retry: Optional hook called with (error, attempt) before each retry
        sleep: Sleep function (replaced in tests)
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except TRANSIENT_ERRORS as e:
            if not is_transient(e) or attempt >= max_attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Transient store error, retrying",
                operation=description,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            if on_retry is not None:
                on_retry(e, attempt)
            if delay > 0:
                sleep(delay)
