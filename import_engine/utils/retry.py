"""
Bounded exponential backoff for calls that may fail transiently.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base... capped."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def call_with_backoff(
    operation: Callable[[], _T],
    *,
    max_attempts: int,
    is_transient: Callable[[BaseException], bool],
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> _T:
    """
    Run `operation`, retrying transient failures with exponential backoff.

    Non-transient exceptions propagate immediately. After `max_attempts`
    transient failures RetryExhaustedError is raised, chained to the last error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= max_attempts:
                raise RetryExhaustedError(attempt, exc) from exc

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
