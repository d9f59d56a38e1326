"""
Bounded retry policy for lock contention.

The policy is injected into the Download Manager so that tests can drive it
with a fake sleep function instead of waiting on the real clock.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Iterator

from spmirror.constants import DEFAULT_LOCK_RETRY_DELAY, MAX_RETRY_DELAY


@dataclass
class RetryPolicy:
    """
    Retry up to `max_retries` times after the first attempt.

    With the default backoff factor of 1.0 the delay is fixed, so the worst-case
    wait is `max_retries * delay` seconds.
    """

    max_retries: int
    delay: float = DEFAULT_LOCK_RETRY_DELAY
    backoff_factor: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @property
    def max_attempts(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1-based)."""
        delay = self.delay * (self.backoff_factor ** max(0, retry_number - 1))
        if self.backoff_factor != 1.0:
            delay = min(delay, MAX_RETRY_DELAY)
        return delay

    def attempts(self) -> Iterator[int]:
        """
        Yield attempt numbers starting at 0, sleeping between attempts.

        The caller breaks out of the loop once an attempt succeeds.
        """
        for attempt in range(self.max_attempts):
            if attempt > 0:
                self.sleep(self.delay_for(attempt))
            yield attempt

    def total_wait(self) -> float:
        return sum(self.delay_for(n) for n in range(1, self.max_attempts))

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return RetryPolicy(
            max_retries=max_retries,
            delay=self.delay,
            backoff_factor=self.backoff_factor,
            sleep=self.sleep,
        )
