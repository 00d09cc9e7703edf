"""Bounded retry with exponential backoff."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Tuple, Type, TypeVar

from .exceptions import FetchError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_s: float = 0.5
    retry_on: Tuple[Type[BaseException], ...] = (FetchError,)

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before attempt ``attempt + 1`` (attempts are 1-based)."""
        delay = self.base_delay_s * (2 ** (attempt - 1))
        return min(delay, self.max_delay_s) + self.jitter_s * rand()


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "",
) -> T:
    """
    Call ``func`` until it succeeds or ``policy.max_attempts`` is reached.

    Only exceptions listed in ``policy.retry_on`` are retried. When the final
    attempt fails with a rate limit, the raised ``RateLimitError`` records the
    number of attempts made.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except policy.retry_on as e:
            if attempt >= attempts:
                if isinstance(e, RateLimitError):
                    e.attempts = attempt
                logger.error(f"Giving up on {description or func} after {attempt} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{attempts} for {description or func} failed ({e}); "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Outcome of a fetch that must not raise across the display boundary."""
    value: Optional[T] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value
