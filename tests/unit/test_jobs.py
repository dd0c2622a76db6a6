"""Tests for export job window arithmetic and the job poller."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from syncs.lib.errors import (
    MalformedResponseError,
    MalformedStateError,
    RetriesExhaustedError,
    SyncCancelled,
    TransientError,
)
from syncs.lib.jobs import (
    AsyncJobPoller,
    ExportWindowPolicy,
    gap_elapsed,
    incremental_window,
    initial_window,
    is_stale,
    retry_window,
    stale_window,
)
from syncs.lib.models import AsyncJob, ChangeType, JobState
from syncs.lib.resilience import RetryPolicy

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
POLICY = ExportWindowPolicy()


def job(start, end, state=JobState.COMPLETED, job_id="j1", created_at=None):
    return AsyncJob(id=job_id, window_start=start, window_end=end, state=state, created_at=created_at)


# ============================================================================
# Windows
# ============================================================================


class TestWindows:
    """Tests for window arithmetic."""

    def test_initial_window_reaches_back_lookback(self):
        """The first job covers [now - lookback, now] when that fits the max window."""
        assert initial_window(NOW, POLICY) == (NOW - timedelta(days=32), NOW)

    def test_initial_window_capped_at_max_window(self):
        """A lookback longer than the max window is cut at the max window."""
        policy = ExportWindowPolicy(lookback=timedelta(days=90))
        start, end = initial_window(NOW, policy)
        assert start == NOW - timedelta(days=90)
        assert end - start == timedelta(days=32)

    def test_retry_window_extends_towards_now(self):
        """A failed short window keeps its start and extends towards now."""
        failed = job(NOW - timedelta(days=10), NOW - timedelta(days=8), JobState.FAILED)
        assert retry_window(failed, NOW, POLICY) == (NOW - timedelta(days=10), NOW)

    def test_retry_window_capped(self):
        """The extension stops at start + max window."""
        failed = job(NOW - timedelta(days=60), NOW - timedelta(days=50), JobState.FAILED)
        assert retry_window(failed, NOW, POLICY) == (NOW - timedelta(days=60), NOW - timedelta(days=28))

    def test_retry_window_never_shrinks(self):
        """A failed window longer than the max window is retried as is."""
        failed = job(NOW - timedelta(days=40), NOW - timedelta(days=1), JobState.FAILED)
        assert retry_window(failed, NOW, POLICY) == (failed.window_start, failed.window_end)

    def test_incremental_window_follows_previous(self):
        """The next window starts where the completed one ended."""
        done = job(NOW - timedelta(days=40), NOW - timedelta(days=3))
        assert incremental_window(done, NOW, POLICY) == (NOW - timedelta(days=3), NOW)

    def test_incremental_window_capped(self):
        """A long gap is caught up one max window at a time."""
        done = job(NOW - timedelta(days=100), NOW - timedelta(days=70))
        assert incremental_window(done, NOW, POLICY) == (NOW - timedelta(days=70), NOW - timedelta(days=38))

    def test_stale_window_restarts_from_stale_start(self):
        """An abandoned window is requested again from its start."""
        stuck = job(NOW - timedelta(days=20), NOW - timedelta(days=10), JobState.PROCESSING)
        assert stale_window(stuck, NOW, POLICY) == (NOW - timedelta(days=20), NOW)


class TestAge:
    """Tests for staleness and min-gap checks."""

    def test_stale_by_created_at(self):
        """Active jobs older than the threshold are stale."""
        stuck = job(NOW, NOW, JobState.PROCESSING, created_at=NOW - timedelta(days=8))
        assert is_stale(stuck, NOW, timedelta(days=7))

    def test_fresh_by_created_at(self):
        """Active jobs younger than the threshold are not stale."""
        running = job(NOW - timedelta(days=30), NOW - timedelta(days=20), JobState.CREATED, created_at=NOW - timedelta(days=1))
        assert not is_stale(running, NOW, timedelta(days=7))

    def test_terminal_jobs_are_never_stale(self):
        """Staleness only applies to created/processing jobs."""
        done = job(NOW - timedelta(days=90), NOW - timedelta(days=60))
        assert not is_stale(done, NOW, timedelta(days=7))

    def test_gap_elapsed(self):
        """The min gap is measured from the previous window end."""
        assert not gap_elapsed(job(NOW, NOW - timedelta(hours=23)), NOW, timedelta(hours=24))
        assert gap_elapsed(job(NOW, NOW - timedelta(hours=24)), NOW, timedelta(hours=24))


# ============================================================================
# AsyncJobPoller
# ============================================================================


class TestAsyncJobPoller:
    """Tests for AsyncJobPoller."""

    def test_create_sets_id_state_and_created_at(self, job_source, clock, sleeps):
        """Created jobs carry the requested window and the creation time."""
        poller = AsyncJobPoller(job_source, clock=clock, sleep=sleeps)
        created = poller.create("org-1", NOW - timedelta(days=32), NOW)
        assert created.id == "job-1"
        assert created.state == JobState.CREATED
        assert created.window_start == NOW - timedelta(days=32)
        assert created.created_at == NOW
        assert job_source.created == [("org-1", NOW - timedelta(days=32), NOW)]

    def test_create_without_id_is_malformed(self, clock, sleeps):
        """An upstream that returns no job id gives a malformed response."""

        class NoIdSource:
            def create_export_job(self, partition, start, end):
                return AsyncJob(window_start=start, window_end=end, state=JobState.CREATED)

        poller = AsyncJobPoller(NoIdSource(), clock=clock, sleep=sleeps)
        with pytest.raises(MalformedResponseError):
            poller.create("org-1", NOW - timedelta(days=1), NOW)

    def test_poll_keeps_requested_window(self, job_source, clock, sleeps):
        """Polling reports the new state on the window that was requested."""
        requested = job(NOW - timedelta(days=5), NOW - timedelta(days=1), JobState.PROCESSING, job_id="j9", created_at=NOW)
        job_source.set_state("j9", JobState.COMPLETED)
        poller = AsyncJobPoller(job_source, clock=clock, sleep=sleeps)
        refreshed = poller.poll("org-1", requested)
        assert refreshed.state == JobState.COMPLETED
        assert refreshed.window_start == requested.window_start
        assert refreshed.window_end == requested.window_end
        assert refreshed.created_at == NOW

    def test_poll_reports_failure_reason(self, job_source, clock, sleeps):
        """Failure reasons are carried over."""
        job_source.set_state("j1", JobState.FAILED, "quota exceeded")
        poller = AsyncJobPoller(job_source, clock=clock, sleep=sleeps)
        refreshed = poller.poll("org-1", job(NOW, NOW, JobState.PROCESSING))
        assert refreshed.error_reason == "quota exceeded"

    def test_poll_without_id_is_malformed_state(self, job_source, clock, sleeps):
        """A stored job without an id cannot be polled."""
        poller = AsyncJobPoller(job_source, clock=clock, sleep=sleeps)
        with pytest.raises(MalformedStateError):
            poller.poll("org-1", job(NOW, NOW, JobState.CREATED, job_id=None))

    def test_poll_mismatched_id_is_malformed(self, clock, sleeps):
        """An upstream answering with another job's status is malformed."""

        class WrongJobSource:
            def get_export_job(self, partition, job_id):
                return job(NOW, NOW, JobState.COMPLETED, job_id="other")

        poller = AsyncJobPoller(WrongJobSource(), clock=clock, sleep=sleeps)
        with pytest.raises(MalformedResponseError):
            poller.poll("org-1", job(NOW, NOW, JobState.CREATED))

    def test_poll_retries_transient_errors(self, job_source, clock, sleeps):
        """Poll calls go through the retry ladder."""
        job_source.set_state("j1", JobState.PROCESSING)
        job_source.errors = [TransientError("502")]
        poller = AsyncJobPoller(job_source, retry_policy=RetryPolicy(base_delay=3.0), clock=clock, sleep=sleeps)
        assert poller.poll("org-1", job(NOW, NOW, JobState.CREATED)).state == JobState.PROCESSING
        assert sleeps.calls == [3.0]

    def test_create_exhausts_retries(self, job_source, clock, sleeps):
        """Persistent failures end in RetriesExhaustedError."""
        job_source.errors = [TransientError("503") for _ in range(5)]
        poller = AsyncJobPoller(job_source, retry_policy=RetryPolicy(max_retries=1), clock=clock, sleep=sleeps)
        with pytest.raises(RetriesExhaustedError):
            poller.create("org-1", NOW - timedelta(days=1), NOW)

    def test_cancelled_before_step(self, job_source, clock, sleeps):
        """A set cancel event stops before any call."""
        cancel = threading.Event()
        cancel.set()
        poller = AsyncJobPoller(job_source, cancel_event=cancel, clock=clock, sleep=sleeps)
        with pytest.raises(SyncCancelled):
            poller.create("org-1", NOW - timedelta(days=1), NOW)
        assert job_source.created == []

    def test_status_record(self):
        """Job status records are upserts keyed by job id."""
        record = AsyncJobPoller.status_record(job(NOW - timedelta(days=1), NOW, JobState.COMPLETED, created_at=NOW))
        assert record.entity_id == "j1"
        assert record.change_type == ChangeType.UPSERT
        assert record.payload["state"] == "completed"
        assert record.effective_time == NOW

    def test_poll_keeps_upstream_extras_in_status_record(self, job_source, clock, sleeps):
        """Extras reported by the upstream on a poll end up in the status record."""
        urls = ["https://exports.example/u1/part-0.csv.gz"]
        job_source.set_state("j1", JobState.COMPLETED, payload={"download_urls": urls, "state": "ignored"})
        poller = AsyncJobPoller(job_source, clock=clock, sleep=sleeps)
        refreshed = poller.poll("org-1", job(NOW, NOW, JobState.PROCESSING, created_at=NOW))
        assert refreshed.payload["download_urls"] == urls
        record = AsyncJobPoller.status_record(refreshed)
        assert record.payload["download_urls"] == urls
        assert record.payload["state"] == "completed"
