"""Process-wide rate limiting for upstream APIs.

One ``RateLimiter`` is shared by every partition hitting the same
upstream. It is the only state mutated across partition boundaries, so
every read-modify-write happens under its lock.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter"]


class RateLimiter:
    """Token-bucket rate limiter with an optional minimum request spacing.

    Example:
        limiter = RateLimiter(requests_per_second=10, burst_size=5)

        for partition in partitions:
            limiter.acquire()  # Blocks until allowed
            fetch(partition)
    """

    def __init__(
        self,
        requests_per_second: float,
        *,
        burst_size: Optional[int] = None,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum sustained rate
            burst_size: Maximum burst capacity (defaults to 1)
            min_interval: Minimum seconds between two granted requests
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.rate = requests_per_second
        self.burst_size = burst_size or 1
        self.min_interval = max(min_interval, 0.0)
        self.tokens = float(self.burst_size)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self._last_grant: Optional[float] = None
        self._lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Acquire a token, blocking until available.

        Args:
            timeout: Maximum time to wait (None = wait forever, 0 = never wait)

        Returns:
            True if token acquired, False if timeout expired
        """
        start_time = self._clock()

        while True:
            with self._lock:
                wait_time = self._try_grant()
                if wait_time == 0.0:
                    return True

            if timeout is not None:
                elapsed = self._clock() - start_time
                if elapsed + wait_time > timeout:
                    return False

            self._sleep(min(wait_time, 0.1))

    def _try_grant(self) -> float:
        """Grant a token if possible; otherwise return seconds to wait.

        Must be called with the lock held.
        """
        self._refill_tokens()
        now = self.last_update

        spacing_wait = 0.0
        if self.min_interval and self._last_grant is not None:
            spacing_wait = max(0.0, self._last_grant + self.min_interval - now)

        if self.tokens >= 1 and spacing_wait == 0.0:
            self.tokens -= 1
            self._last_grant = now
            return 0.0

        token_wait = 0.0 if self.tokens >= 1 else (1 - self.tokens) / self.rate
        return max(token_wait, spacing_wait, 1e-6)

    def _refill_tokens(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(
            self.burst_size,
            self.tokens + elapsed * self.rate,
        )
        self.last_update = now
