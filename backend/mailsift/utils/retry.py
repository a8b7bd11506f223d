"""Bounded retry with exponential backoff for network and store calls."""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always(exc: BaseException) -> bool:
    return True


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    should_retry: Callable[[BaseException], bool] = _always
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return self.initial_delay * (self.multiplier ** (attempt - 1))

    def run(
        self,
        fn: Callable[[], T],
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """
        Call fn until it succeeds or attempts run out.

        Non-retryable errors and the error from the final attempt propagate unchanged.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self.should_retry(e):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(f"Retry attempt {attempt}/{self.max_attempts - 1} in {delay:.1f}s after: {e}")
                if on_retry:
                    on_retry(attempt, e)
                self.sleep(delay)
                attempt += 1


def retry_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    should_retry: Callable[[BaseException], bool] = _always,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    policy = RetryPolicy(max_attempts=max_attempts, initial_delay=initial_delay, should_retry=should_retry)
    return policy.run(fn, on_retry=on_retry)
