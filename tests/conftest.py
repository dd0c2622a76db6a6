"""Pytest configuration and fixtures.

The fakes here stand in for connectors: a page source that serves
scripted pages per partition and fetch kind, and an export job source
whose job states tests set by hand. Time is fixed and sleeps are
recorded instead of slept.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from syncs.lib.models import AsyncJob, FetchKind, FetchMode, JobState, Page
from syncs.lib.watermark import InMemoryStateBackend, WatermarkStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedPageSource:
    """Serves pages registered with ``add_pages``.

    Pages of one partition are chained by their ``next_cursor``: the first
    page answers cursor None, the second answers the first page's
    ``next_cursor`` and so on. Scripts can be registered per fetch kind;
    a script registered without a kind answers every kind.
    """

    def __init__(self) -> None:
        self.pages: Dict[Tuple[str, Optional[FetchKind]], List[Page]] = {}
        self.errors: List[Tuple[str, Optional[str], Optional[FetchKind], Exception]] = []
        self.calls: List[Tuple[str, Optional[str], FetchMode]] = []

    def add_pages(self, partition: str, *pages: Page, kind: Optional[FetchKind] = None) -> None:
        self.pages[(partition, kind)] = list(pages)

    def fail(
        self,
        partition: str,
        error: Exception,
        *,
        cursor: Optional[str] = None,
        kind: Optional[FetchKind] = None,
        times: int = 1,
    ) -> None:
        """Raise ``error`` the next ``times`` calls for ``cursor``."""
        for _ in range(times):
            self.errors.append((partition, cursor, kind, error))

    def fetch_page(self, partition: str, cursor: Optional[str], mode: FetchMode) -> Page:
        self.calls.append((partition, cursor, mode))
        for i, (p, c, kind, error) in enumerate(self.errors):
            if p == partition and c == cursor and kind in (None, mode.kind):
                del self.errors[i]
                raise error

        pages = self.pages.get((partition, mode.kind), self.pages.get((partition, None)))
        if pages is None:
            return Page()
        by_cursor: Dict[Optional[str], Page] = {}
        current: Optional[str] = None
        for page in pages:
            by_cursor[current] = page
            current = page.next_cursor
        return by_cursor[cursor]

    def modes(self, partition: str) -> List[FetchKind]:
        return [mode.kind for p, _, mode in self.calls if p == partition]


class FakeJobSource:
    """Export job source whose job states are set by the test."""

    def __init__(self) -> None:
        self.jobs: Dict[str, AsyncJob] = {}
        self.created: List[Tuple[str, datetime, datetime]] = []
        self.polled: List[Tuple[str, str]] = []
        self.errors: List[Exception] = []

    def create_export_job(self, partition: str, window_start: datetime, window_end: datetime) -> AsyncJob:
        if self.errors:
            raise self.errors.pop(0)
        self.created.append((partition, window_start, window_end))
        job = AsyncJob(
            id=f"job-{len(self.created)}",
            window_start=window_start,
            window_end=window_end,
            state=JobState.CREATED,
        )
        self.jobs[job.id] = job  # type: ignore[index]
        return job

    def get_export_job(self, partition: str, job_id: str) -> AsyncJob:
        if self.errors:
            raise self.errors.pop(0)
        self.polled.append((partition, job_id))
        return self.jobs[job_id]

    def set_state(
        self,
        job_id: str,
        state: JobState,
        error_reason: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        job = self.jobs.get(job_id) or AsyncJob(
            id=job_id,
            window_start=NOW - timedelta(days=1),
            window_end=NOW,
            state=state,
        )
        self.jobs[job_id] = replace(job, state=state, error_reason=error_reason, payload=payload or {})


class Recorder:
    """Callable that records its arguments, used in place of ``time.sleep``."""

    def __init__(self) -> None:
        self.calls: List[Any] = []

    def __call__(self, value: Any) -> None:
        self.calls.append(value)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def sleeps():
    return Recorder()


@pytest.fixture
def page_source():
    return ScriptedPageSource()


@pytest.fixture
def job_source():
    return FakeJobSource()


@pytest.fixture
def backend():
    return InMemoryStateBackend()


@pytest.fixture
def store(backend, clock):
    return WatermarkStore(backend, clock=clock)


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Keep JSON state files written by tests inside tmp_path."""
    monkeypatch.setenv("SYNC_STATE_DIR", str(tmp_path / "state"))


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Drop handlers installed by setup_logging during a test and restore the level.

    pytest's own capture handlers are subclasses and are left alone.
    """
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers and type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)
