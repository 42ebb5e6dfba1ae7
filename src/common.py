"""Common utilities and types for provisioning."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attempt n (1-based) that fails with a retryable error waits
    min(max_delay, base_delay * factor ** (n - 1)) before attempt n + 1.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * self.factor ** (attempt - 1))


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    description: str = 'operation',
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying retryable failures according to policy.

    The last exception propagates once attempts are exhausted, and
    non-retryable exceptions propagate immediately.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description, attempt, policy.max_attempts, e, delay,
            )
            sleep(delay)
            attempt += 1


def format_duration(seconds: float) -> str:
    """Render a duration for console output (e.g. '1m 05s', '3.2s')."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"
