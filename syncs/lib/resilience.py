"""Retry ladder shared by every sync strategy.

Rate-limit signals and other transient failures climb the same backoff
ladder (1s, 2s, 4s, ...) but keep separate attempt counters, so a burst
of 429s does not eat the budget for a flaky connection and vice versa.
A ``Retry-After`` hint from the upstream overrides the ladder.

Implementation: uses tenacity with a per-call ledger for the counters.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, TypeVar

import tenacity

from syncs.lib.errors import (
    RateLimitError,
    RateLimitExhaustedError,
    RetriesExhaustedError,
    TransientError,
)

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "call_with_retry"]

T = TypeVar("T")

_RATE_LIMIT = "rate_limit"
_TRANSIENT = "transient"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, to retry.

    ``max_retries`` applies to each failure kind separately.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def none(cls) -> "RetryPolicy":
        """No retry - fail on the first transient error."""
        return cls(max_retries=0)

    @classmethod
    def default(cls) -> "RetryPolicy":
        """Three retries per failure kind starting at one second."""
        return cls()

    def backoff(self, retry_number: int) -> float:
        """Delay before the ``retry_number``-th retry (1-based)."""
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)


class _RetryLedger:
    """Per-call attempt counters.

    Counting happens in the retry predicate, which tenacity evaluates
    exactly once per failed attempt; stop and wait only read the counters.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self.counts: Dict[str, int] = {_RATE_LIMIT: 0, _TRANSIENT: 0}
        self.last_kind = _TRANSIENT

    @staticmethod
    def _exception(retry_state: tenacity.RetryCallState) -> Optional[BaseException]:
        if retry_state.outcome is None or not retry_state.outcome.failed:
            return None
        return retry_state.outcome.exception()

    def should_retry(self, retry_state: tenacity.RetryCallState) -> bool:
        exc = self._exception(retry_state)
        if not isinstance(exc, TransientError):
            return False
        kind = _RATE_LIMIT if isinstance(exc, RateLimitError) else _TRANSIENT
        self.counts[kind] += 1
        self.last_kind = kind
        return True

    def stop(self, retry_state: tenacity.RetryCallState) -> bool:
        return self.counts[self.last_kind] > self.policy.max_retries

    def wait(self, retry_state: tenacity.RetryCallState) -> float:
        exc = self._exception(retry_state)
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return max(exc.retry_after, 0.0)
        return self.policy.backoff(self.counts[self.last_kind])


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = "request",
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` under the retry ladder.

    Only ``TransientError`` (including ``RateLimitError``) is retried;
    everything else propagates on the first occurrence.

    Raises:
        RateLimitExhaustedError: still rate limited after the last retry
        RetriesExhaustedError: other transient failures after the last retry

    Example:
        page = call_with_retry(
            lambda: source.fetch_page(partition, cursor, mode),
            RetryPolicy.default(),
            "fetch page",
        )
    """
    ledger = _RetryLedger(policy)

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d failed: %s. Retrying in %.1fs...",
            description,
            retry_state.attempt_number,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    retryer = tenacity.Retrying(
        stop=ledger.stop,
        wait=ledger.wait,
        retry=ledger.should_retry,
        before_sleep=before_sleep_handler,
        sleep=sleep,
        reraise=False,
    )

    try:
        return retryer(operation)
    except tenacity.RetryError as exc:
        last_error = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        if isinstance(last_error, RateLimitError):
            logger.error("%s still rate limited after %d attempts", description, attempts)
            raise RateLimitExhaustedError(
                f"{description} still rate limited after {attempts} attempts",
                attempts=attempts,
                last_error=last_error,
            ) from last_error
        logger.error("%s failed after %d attempts: %s", description, attempts, last_error)
        raise RetriesExhaustedError(
            f"{description} failed after {attempts} attempts",
            attempts=attempts,
            last_error=last_error,
        ) from last_error
