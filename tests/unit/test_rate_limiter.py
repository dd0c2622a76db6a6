"""Tests for the token-bucket rate limiter.

A fake clock is advanced by the injected sleep, so no test waits.
"""

import threading

import pytest

from syncs.lib.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_limiter(rps, **kwargs):
    clock = FakeClock()
    return RateLimiter(rps, clock=clock, sleep=clock.sleep, **kwargs), clock


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_rejects_non_positive_rate(self):
        """A rate of zero or less is a programming error."""
        with pytest.raises(ValueError):
            RateLimiter(0)

    def test_burst_is_granted_immediately(self):
        """Up to burst_size requests go through without waiting."""
        limiter, clock = make_limiter(1, burst_size=3)
        for _ in range(3):
            assert limiter.acquire(timeout=0)
        assert not limiter.acquire(timeout=0)
        assert clock.sleeps == []

    def test_acquire_waits_for_refill(self):
        """Once the bucket is empty, acquire sleeps until a token refills."""
        limiter, clock = make_limiter(2)
        assert limiter.acquire()
        assert limiter.acquire()
        assert clock.now == pytest.approx(0.5, abs=0.01)

    def test_acquire_timeout(self):
        """acquire returns False when the wait would exceed the timeout."""
        limiter, clock = make_limiter(0.1)
        assert limiter.acquire()
        assert limiter.acquire(timeout=1.0) is False

    def test_min_interval_spaces_requests(self):
        """min_interval holds requests apart even with tokens available."""
        limiter, clock = make_limiter(100, burst_size=10, min_interval=2.0)
        limiter.acquire()
        limiter.acquire()
        assert clock.now == pytest.approx(2.0, abs=0.11)

    def test_tokens_capped_at_burst(self):
        """Idle time does not accumulate more than burst_size tokens."""
        limiter, clock = make_limiter(10, burst_size=2)
        clock.now += 100
        assert limiter.acquire(timeout=0)
        assert limiter.acquire(timeout=0)
        assert not limiter.acquire(timeout=0)

    def test_shared_between_threads(self):
        """Concurrent callers never get more than the burst at once."""
        limiter = RateLimiter(1, burst_size=5, clock=lambda: 0.0)
        granted = []

        def worker():
            granted.append(limiter.acquire(timeout=0))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert granted.count(True) == 5
