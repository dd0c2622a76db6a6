"""Async export jobs: window arithmetic, staleness and polling.

Some upstreams (CI usage exports, audit logs) do not page through live
data. Instead a job is created for a time window, the server works on it
for minutes or hours, and a later run picks up the result. One job per
partition is tracked in the watermark store; this module decides which
window the next job covers and talks to the ``ExportJobSource``.

Windows are half-open ``[start, end)`` in UTC.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from syncs.lib.errors import MalformedResponseError, MalformedStateError, SyncCancelled
from syncs.lib.models import (
    AsyncJob,
    ChangeRecord,
    ExportJobSource,
    JobState,
    format_timestamp,
    utcnow,
)
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

__all__ = [
    "AsyncJobPoller",
    "ExportWindowPolicy",
    "Window",
    "gap_elapsed",
    "incremental_window",
    "initial_window",
    "is_stale",
    "retry_window",
    "stale_window",
]

Window = Tuple[datetime, datetime]


@dataclass(frozen=True)
class ExportWindowPolicy:
    """Timing rules for export jobs.

    Attributes:
        max_window: Longest window a single job may cover
        min_gap: Minimum time between a completed window's end and the next job
        staleness: How long a job may stay created/processing before it is
            considered abandoned
        lookback: How far back the very first job reaches
    """

    max_window: timedelta = timedelta(days=32)
    min_gap: timedelta = timedelta(hours=24)
    staleness: timedelta = timedelta(days=7)
    lookback: timedelta = timedelta(days=32)


def initial_window(now: datetime, policy: ExportWindowPolicy) -> Window:
    """Window for the first job of a partition: ``[now - lookback, ...]``."""
    start = now - policy.lookback
    return start, min(start + policy.max_window, now)


def retry_window(job: AsyncJob, now: datetime, policy: ExportWindowPolicy) -> Window:
    """Window for replacing a failed job.

    Keeps the failed start and extends toward ``now`` up to the max window,
    but never ends before the failed job did.
    """
    start = job.window_start
    end = max(job.window_end, min(start + policy.max_window, now))
    return start, end


def incremental_window(job: AsyncJob, now: datetime, policy: ExportWindowPolicy) -> Window:
    """Window that follows a completed job."""
    start = job.window_end
    return start, min(start + policy.max_window, now)


def stale_window(job: AsyncJob, now: datetime, policy: ExportWindowPolicy) -> Window:
    """Window replacing an abandoned job; its range was never exported."""
    start = job.window_start
    return start, min(start + policy.max_window, now)


def is_stale(job: AsyncJob, now: datetime, staleness: timedelta) -> bool:
    """True if an active job has outlived ``staleness``.

    Age is measured from ``created_at``, falling back to the window end for
    descriptors written without a creation time.
    """
    if not job.is_active:
        return False
    since = job.created_at or job.window_end
    return now - since > staleness


def gap_elapsed(job: AsyncJob, now: datetime, min_gap: timedelta) -> bool:
    return now - job.window_end >= min_gap


class AsyncJobPoller:
    """Creates and refreshes export jobs through an ``ExportJobSource``.

    Every call goes through the shared rate limiter and retry ladder, and
    the cancel event is checked before each step.
    """

    def __init__(
        self,
        source: ExportJobSource,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self._clock = clock
        self._sleep = sleep

    def poll(self, partition: str, job: AsyncJob) -> AsyncJob:
        """Fetch the current status of ``job``."""
        if job.id is None:
            raise MalformedStateError(
                "Cannot poll an export job without an id",
                partition=partition,
                state=job.to_dict(),
            )
        self._check_cancelled(f"polling job {job.id}")

        refreshed = self._call(
            lambda: self.source.get_export_job(partition, job.id),  # type: ignore[arg-type]
            f"poll export job {job.id}",
        )
        if refreshed.id is not None and refreshed.id != job.id:
            raise MalformedResponseError(
                f"Polled job {job.id} but upstream returned job {refreshed.id}",
                partition=partition,
                payload=refreshed.to_dict(),
            )

        # Upstreams usually report status only; keep the window we asked for.
        result = AsyncJob(
            id=job.id,
            window_start=job.window_start,
            window_end=job.window_end,
            state=refreshed.state,
            error_reason=refreshed.error_reason,
            created_at=job.created_at or refreshed.created_at,
            payload=refreshed.payload,
        )
        if result.state != job.state:
            logger.info(
                "Export job %s for %s: %s -> %s",
                job.id,
                partition,
                job.state.value,
                result.state.value,
            )
        return result

    def create(self, partition: str, window_start: datetime, window_end: datetime) -> AsyncJob:
        """Create a job for ``[window_start, window_end)``."""
        self._check_cancelled("creating export job")

        created = self._call(
            lambda: self.source.create_export_job(partition, window_start, window_end),
            "create export job",
        )
        if created.id is None:
            raise MalformedResponseError(
                "Export job was created without an id",
                partition=partition,
                payload=created.to_dict(),
            )

        job = AsyncJob(
            id=created.id,
            window_start=window_start,
            window_end=window_end,
            state=created.state if created.state.is_active else JobState.CREATED,
            created_at=created.created_at or self._clock(),
            payload=created.payload,
        )
        logger.info(
            "Created export job %s for %s covering %s to %s",
            job.id,
            partition,
            format_timestamp(window_start),
            format_timestamp(window_end),
        )
        return job

    @staticmethod
    def status_record(job: AsyncJob) -> ChangeRecord:
        """The record announcing a job's current status in the output stream.

        Upstream extras (e.g. download URLs) are included; the job fields win
        on a name clash.
        """
        entity_id = job.id or f"{format_timestamp(job.window_start)}/{format_timestamp(job.window_end)}"
        return ChangeRecord.upsert(
            entity_id,
            {**job.payload, **job.to_dict()},
            effective_time=job.created_at or job.window_end,
        )

    def _call(self, operation: Callable[[], AsyncJob], description: str) -> AsyncJob:
        def do_call() -> AsyncJob:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            return operation()

        return call_with_retry(do_call, self.retry_policy, description, sleep=self._sleep)

    def _check_cancelled(self, step: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelled(f"Cancelled before {step}")
