"""Per-partition fetch strategy selection and execution.

``select`` looks at a partition's stored watermark and the requested sync
mode and decides what to do this run; it is a pure function so every
transition can be tested without a network. ``FetchStrategySelector``
executes the decision: it drives the paginated fetcher, the delta
reconciler or the export job poller, yields change records, and merges
the resulting position back into the watermark store.

State machine:

    no watermark        -> FULL_FETCH          (export jobs: CREATE_INITIAL_JOB)
    cutoff              -> INCREMENTAL_FETCH   (full sync mode: FULL_FETCH)
    change token        -> DELTA_FETCH         (expired: one FULL_FETCH)
    job created/processing -> POLL_JOB         (stale: CREATE_INCREMENTAL_JOB)
    job failed          -> CREATE_RETRY_JOB
    job completed       -> SKIP within the min gap, else CREATE_INCREMENTAL_JOB
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterator, Optional

from syncs.lib.delta import DeltaReconciler
from syncs.lib.errors import ConfigurationError, TokenExpiredError
from syncs.lib.jobs import (
    AsyncJobPoller,
    ExportWindowPolicy,
    Window,
    gap_elapsed,
    incremental_window,
    initial_window,
    is_stale,
    retry_window,
    stale_window,
)
from syncs.lib.models import (
    AsyncJob,
    ChangeRecord,
    ChangeTokenWatermark,
    CutoffWatermark,
    ExportJobSource,
    FetchMode,
    JobState,
    PageSource,
    PartitionKey,
    PendingJobWatermark,
    SyncMode,
    Watermark,
    format_timestamp,
    utcnow,
)
from syncs.lib.pagination import fetch_all, iter_pages
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy
from syncs.lib.watermark import WatermarkStore

logger = logging.getLogger(__name__)

__all__ = [
    "Decision",
    "FetchStrategySelector",
    "Strategy",
    "StreamKind",
    "select",
]


class StreamKind(Enum):
    """How a stream tracks its position."""

    CUTOFF = "cutoff"
    CHANGE_TOKEN = "change_token"
    EXPORT_JOB = "export_job"


class Strategy(Enum):
    FULL_FETCH = "full_fetch"
    INCREMENTAL_FETCH = "incremental_fetch"
    DELTA_FETCH = "delta_fetch"
    POLL_JOB = "poll_job"
    CREATE_INITIAL_JOB = "create_initial_job"
    CREATE_RETRY_JOB = "create_retry_job"
    CREATE_INCREMENTAL_JOB = "create_incremental_job"
    SKIP = "skip"

    @property
    def creates_job(self) -> bool:
        return self in (
            Strategy.CREATE_INITIAL_JOB,
            Strategy.CREATE_RETRY_JOB,
            Strategy.CREATE_INCREMENTAL_JOB,
        )


@dataclass(frozen=True)
class Decision:
    """What to do for one partition this run.

    Only the fields relevant to ``strategy`` are set: ``since`` for fetches,
    ``token``/``resume_cursor`` for delta fetches, ``window`` for job
    creation and ``job`` for anything that starts from a known job.
    """

    strategy: Strategy
    since: Optional[datetime] = None
    token: Optional[str] = None
    resume_cursor: Optional[str] = None
    window: Optional[Window] = None
    job: Optional[AsyncJob] = None
    reason: str = ""


def select(
    watermark: Optional[Watermark],
    sync_mode: SyncMode,
    now: datetime,
    *,
    kind: StreamKind = StreamKind.CUTOFF,
    windows: Optional[ExportWindowPolicy] = None,
    start_date: Optional[datetime] = None,
) -> Decision:
    """Decide the fetch strategy for a partition.

    Args:
        watermark: Stored position, None when the partition was never synced
        sync_mode: What the caller asked for
        now: Current time
        kind: Position tracking of the stream
        windows: Export job timing rules (export job streams only)
        start_date: Lower bound for full fetches, if the stream has one

    Returns:
        The decision; never raises
    """
    if kind == StreamKind.EXPORT_JOB:
        return _select_job(watermark, now, windows or ExportWindowPolicy())

    if sync_mode == SyncMode.FULL_REFRESH:
        return Decision(Strategy.FULL_FETCH, since=start_date, reason="full refresh requested")

    if kind == StreamKind.CHANGE_TOKEN and isinstance(watermark, ChangeTokenWatermark):
        return Decision(
            Strategy.DELTA_FETCH,
            token=watermark.token,
            resume_cursor=watermark.resume_cursor,
            reason="change token stored",
        )

    if kind == StreamKind.CUTOFF and isinstance(watermark, CutoffWatermark):
        return Decision(
            Strategy.INCREMENTAL_FETCH,
            since=watermark.cutoff,
            reason=f"cutoff {format_timestamp(watermark.cutoff)}",
        )

    if watermark is not None:
        logger.warning(
            "Ignoring %s stored for a %s stream",
            type(watermark).__name__,
            kind.value,
        )
    return Decision(Strategy.FULL_FETCH, since=start_date, reason="no watermark")


def _select_job(
    watermark: Optional[Watermark],
    now: datetime,
    windows: ExportWindowPolicy,
) -> Decision:
    if not isinstance(watermark, PendingJobWatermark):
        return _create(
            Strategy.CREATE_INITIAL_JOB,
            initial_window(now, windows),
            None,
            "no previous export job",
        )

    job = watermark.job
    if job.is_active:
        if is_stale(job, now, windows.staleness):
            return _create(
                Strategy.CREATE_INCREMENTAL_JOB,
                stale_window(job, now, windows),
                job,
                f"job {job.id} has been {job.state.value} longer than {windows.staleness}",
            )
        return Decision(Strategy.POLL_JOB, job=job, reason=f"job {job.id} is {job.state.value}")

    if job.state == JobState.FAILED:
        return _create(
            Strategy.CREATE_RETRY_JOB,
            retry_window(job, now, windows),
            job,
            f"job {job.id} failed: {job.error_reason or 'no reason given'}",
        )

    if not gap_elapsed(job, now, windows.min_gap):
        return Decision(
            Strategy.SKIP,
            job=job,
            reason=f"last window ended {format_timestamp(job.window_end)}, within {windows.min_gap}",
        )

    return _create(
        Strategy.CREATE_INCREMENTAL_JOB,
        incremental_window(job, now, windows),
        job,
        f"job {job.id} completed",
    )


def _create(strategy: Strategy, window: Window, job: Optional[AsyncJob], reason: str) -> Decision:
    start, end = window
    if end <= start:
        return Decision(Strategy.SKIP, job=job, reason="export window is empty")
    return Decision(strategy, window=window, job=job, reason=reason)


class FetchStrategySelector:
    """Runs one stream's sync for a partition at a time.

    One selector serves every partition of a stream and may be used from
    several threads: all per-partition state lives in locals and the
    watermark store.

    Example:
        selector = FetchStrategySelector(
            store,
            kind=StreamKind.CUTOFF,
            page_source=issues,
            descending=True,
            rate_limiter=limiter,
        )
        for record in selector.run(PartitionKey("acme/widgets")):
            sink.emit(key, record)
    """

    def __init__(
        self,
        store: WatermarkStore,
        *,
        kind: StreamKind = StreamKind.CUTOFF,
        page_source: Optional[PageSource] = None,
        job_source: Optional[ExportJobSource] = None,
        stream: Optional[str] = None,
        windows: Optional[ExportWindowPolicy] = None,
        descending: bool = False,
        start_date: Optional[datetime] = None,
        cutoff_lag: Optional[timedelta] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.kind = kind
        self.page_source = page_source
        self.job_source = job_source
        self.stream = stream
        self.windows = windows or ExportWindowPolicy()
        self.descending = descending
        self.start_date = start_date
        self.cutoff_lag = cutoff_lag
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self._clock = clock
        self._sleep = sleep

        self.validate()

        self.poller: Optional[AsyncJobPoller] = None
        if job_source is not None:
            self.poller = AsyncJobPoller(
                job_source,
                retry_policy=self.retry_policy,
                rate_limiter=rate_limiter,
                cancel_event=cancel_event,
                clock=clock,
                sleep=sleep,
            )

    def validate(self) -> None:
        """Raise ConfigurationError for a selector that could not run."""
        if self.kind == StreamKind.EXPORT_JOB:
            if self.job_source is None:
                raise ConfigurationError(
                    "Export job streams need a job source",
                    field="job_source",
                    stream=self.stream,
                )
        elif self.page_source is None:
            raise ConfigurationError(
                f"{self.kind.value} streams need a page source",
                field="page_source",
                stream=self.stream,
            )

        for name in ("max_window", "min_gap", "staleness", "lookback"):
            value = getattr(self.windows, name)
            if value < timedelta(0):
                raise ConfigurationError(f"{name} must not be negative", field=name, value=value)
        if self.windows.max_window <= timedelta(0):
            raise ConfigurationError(
                "max_window must be positive",
                field="max_window",
                value=self.windows.max_window,
            )
        if self.cutoff_lag is not None and self.cutoff_lag < timedelta(0):
            raise ConfigurationError("cutoff_lag must not be negative", field="cutoff_lag", value=self.cutoff_lag)

    def use_cancel_event(self, cancel_event: threading.Event) -> None:
        self.cancel_event = cancel_event
        if self.poller is not None:
            self.poller.cancel_event = cancel_event

    def key_for(self, partition: str) -> PartitionKey:
        return PartitionKey(partition=partition, stream=self.stream)

    def decide(self, key: PartitionKey, sync_mode: SyncMode = SyncMode.INCREMENTAL) -> Decision:
        return select(
            self.store.get(key),
            sync_mode,
            self._clock(),
            kind=self.kind,
            windows=self.windows,
            start_date=self.start_date,
        )

    def run(
        self,
        key: PartitionKey,
        sync_mode: SyncMode = SyncMode.INCREMENTAL,
    ) -> Iterator[ChangeRecord]:
        """Sync one partition, yielding its change records.

        The watermark is merged when the iterator is exhausted. If it raises
        or is closed early, cutoff and export job watermarks are left as they
        were; change-feed positions are persisted record by record.
        """
        current = self.store.get(key)
        decision = select(
            current,
            sync_mode,
            self._clock(),
            kind=self.kind,
            windows=self.windows,
            start_date=self.start_date,
        )
        logger.info("%s: %s (%s)", key, decision.strategy.value, decision.reason)

        strategy = decision.strategy
        if strategy == Strategy.SKIP:
            return
        if strategy == Strategy.DELTA_FETCH:
            yield from self._run_delta(key, decision)
        elif strategy == Strategy.POLL_JOB:
            yield from self._run_poll(key, current, decision)
        elif strategy.creates_job:
            yield from self._run_create(key, current, decision)
        elif self.kind == StreamKind.CHANGE_TOKEN:
            yield from self._run_full_resync(key, decision.since)
        else:
            yield from self._run_fetch(key, current, decision)

    # --------------------------------------------
    # Page fetching
    # --------------------------------------------

    def _run_fetch(
        self,
        key: PartitionKey,
        current: Optional[Watermark],
        decision: Decision,
    ) -> Iterator[ChangeRecord]:
        cutoff: Optional[datetime] = None
        if decision.strategy == Strategy.INCREMENTAL_FETCH:
            cutoff = decision.since
            mode = FetchMode.incremental(cutoff)  # type: ignore[arg-type]
        else:
            mode = FetchMode.full(decision.since)

        def already_synced(record: ChangeRecord) -> bool:
            return (
                cutoff is not None
                and record.effective_time is not None
                and record.effective_time <= cutoff
            )

        records = fetch_all(
            lambda cursor: self.page_source.fetch_page(key.partition, cursor, mode),  # type: ignore[union-attr]
            already_synced if self.descending else None,
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            cancel_event=self.cancel_event,
            description=f"fetch {key}",
            sleep=self._sleep,
        )

        newest: Optional[datetime] = None
        count = 0
        skipped = 0
        for record in records:
            if already_synced(record):
                skipped += 1
                continue
            if record.effective_time is not None and (newest is None or record.effective_time > newest):
                newest = record.effective_time
            count += 1
            yield record

        merged = self.store.merge(key, current, newest, cutoff_lag=self.cutoff_lag)
        if skipped:
            logger.debug("Skipped %d already-synced records for %s", skipped, key)
        logger.info(
            "Fetched %d records for %s; cutoff now %s",
            count,
            key,
            format_timestamp(merged.cutoff) if isinstance(merged, CutoffWatermark) else None,
        )

    # --------------------------------------------
    # Change feeds
    # --------------------------------------------

    def _run_delta(self, key: PartitionKey, decision: Decision) -> Iterator[ChangeRecord]:
        reconciler = DeltaReconciler(
            self.page_source,  # type: ignore[arg-type]
            key.partition,
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            cancel_event=self.cancel_event,
            sleep=self._sleep,
        )

        expired = False
        persisted: Optional[ChangeTokenWatermark] = None
        items = reconciler.fetch_delta(decision.token, decision.resume_cursor)  # type: ignore[arg-type]
        try:
            for item in items:
                if item.record is not None:
                    yield item.record
                if item.position != persisted:
                    self.store.put(key, item.position)
                    persisted = item.position
        except TokenExpiredError as e:
            logger.warning("Change token for %s is no longer valid (%s); running a full resync", key, e.message)
            expired = True
        finally:
            items.close()

        if expired:
            yield from self._run_full_resync(key, self.start_date)

    def _run_full_resync(self, key: PartitionKey, since: Optional[datetime]) -> Iterator[ChangeRecord]:
        """Full listing of a change-feed stream, ending with a fresh sync token."""
        mode = FetchMode.full(since)
        pages = iter_pages(
            lambda cursor: self.page_source.fetch_page(key.partition, cursor, mode),  # type: ignore[union-attr]
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            cancel_event=self.cancel_event,
            description=f"full sync {key}",
            sleep=self._sleep,
        )

        sync_token: Optional[str] = None
        count = 0
        try:
            for _, page in pages:
                for record in page.items:
                    count += 1
                    yield record
                if page.is_last:
                    sync_token = page.sync_token
        finally:
            pages.close()

        if sync_token:
            self.store.put(key, ChangeTokenWatermark(token=sync_token))
        else:
            logger.warning("Full sync of %s returned no sync token; the next run starts over", key)
            self.store.reset(key)
        logger.info("Fetched %d records for %s with a full sync", count, key)

    # --------------------------------------------
    # Export jobs
    # --------------------------------------------

    def _run_poll(
        self,
        key: PartitionKey,
        current: Optional[Watermark],
        decision: Decision,
    ) -> Iterator[ChangeRecord]:
        refreshed = self.poller.poll(key.partition, decision.job)  # type: ignore[union-attr,arg-type]
        yield AsyncJobPoller.status_record(refreshed)
        merged = self.store.merge(key, current, refreshed, staleness=self.windows.staleness, now=self._clock())

        if refreshed.state != JobState.COMPLETED:
            return

        follow_up = _select_job(merged, self._clock(), self.windows)
        logger.info("%s: %s after completion (%s)", key, follow_up.strategy.value, follow_up.reason)
        if follow_up.strategy.creates_job:
            yield from self._run_create(key, merged, follow_up)

    def _run_create(
        self,
        key: PartitionKey,
        current: Optional[Watermark],
        decision: Decision,
    ) -> Iterator[ChangeRecord]:
        if decision.strategy == Strategy.CREATE_RETRY_JOB and decision.job is not None:
            yield AsyncJobPoller.status_record(decision.job)

        start, end = decision.window  # type: ignore[misc]
        job = self.poller.create(key.partition, start, end)  # type: ignore[union-attr]
        yield AsyncJobPoller.status_record(job)
        self.store.merge(key, current, job, staleness=self.windows.staleness, now=self._clock())
