"""
Retry helper with exponential backoff.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int,
    initial_delay: float,
    multiplier: float = 2.0,
    *,
    sleep: Callable[[float], object] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """
    Call ``operation`` until it succeeds or ``max_attempts`` is reached.

    The wait before attempt n+1 is ``initial_delay * multiplier ** (n - 1)``
    seconds. The last exception is re-raised once attempts are exhausted.
    ``sleep`` is injectable so callers can make waits interruptible or tests
    can skip them.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    label = description or getattr(operation, "__name__", "operation")
    delay = initial_delay
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= max_attempts:
                logger.warning("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            logger.warning(
                "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                label, attempt, max_attempts, exc, delay,
            )
            sleep(delay)
            delay *= multiplier
            attempt += 1
