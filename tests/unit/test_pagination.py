"""Unit tests for the paginated fetcher and pagination state machines.

Tests cover:
- fetch_all: lazy multi-page iteration, stop predicate, retries per page
- iter_pages: cursors, repeated-cursor guard, cancellation
- Offset, page and cursor pagination (cursor extraction from nested JSON)
- Edge cases: empty responses, partial pages, max_pages limits
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from syncs.lib.errors import ConfigurationError, RetriesExhaustedError, SyncCancelled, TransientError
from syncs.lib.models import ChangeRecord, Page
from syncs.lib.pagination import (
    CursorPaginationState,
    NoPaginationState,
    OffsetPaginationState,
    PagePaginationState,
    PaginationConfig,
    PaginationStrategy,
    build_pagination_config_from_dict,
    build_pagination_state,
    extract_path,
    fetch_all,
    iter_pages,
)
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def rec(entity_id, hours=0):
    return ChangeRecord.upsert(entity_id, {"id": entity_id}, effective_time=T0 + timedelta(hours=hours))


class PagedFeed:
    """fetch_page callable over a list of pages chained by cursor "c1", "c2", ..."""

    def __init__(self, *item_lists, errors=None):
        self.pages = {}
        for i, items in enumerate(item_lists):
            cursor = f"c{i}" if i else None
            next_cursor = f"c{i + 1}" if i + 1 < len(item_lists) else None
            self.pages[cursor] = Page(items=list(items), next_cursor=next_cursor)
        self.errors = errors or {}
        self.calls = []

    def __call__(self, cursor):
        self.calls.append(cursor)
        pending = self.errors.get(cursor)
        if pending:
            raise pending.pop(0)
        return self.pages[cursor]


# ============================================================================
# fetch_all / iter_pages
# ============================================================================


class TestFetchAll:
    """Tests for fetch_all."""

    def test_yields_records_across_pages(self, sleeps):
        """Records from every page are yielded in order."""
        feed = PagedFeed([rec("a"), rec("b")], [rec("c")], [rec("d")])
        ids = [r.entity_id for r in fetch_all(feed, sleep=sleeps)]
        assert ids == ["a", "b", "c", "d"]
        assert feed.calls == [None, "c1", "c2"]

    def test_is_lazy(self, sleeps):
        """No page beyond the one being consumed is requested."""
        feed = PagedFeed([rec("a")], [rec("b")])
        records = fetch_all(feed, sleep=sleeps)
        assert feed.calls == []
        next(records)
        assert feed.calls == [None]

    def test_empty_first_page(self, sleeps):
        """An empty terminal first page yields nothing."""
        assert list(fetch_all(PagedFeed([]), sleep=sleeps)) == []

    def test_stop_predicate_drops_record_and_stops(self, sleeps):
        """The first matching record is dropped and no further page is fetched."""
        feed = PagedFeed([rec("a", 5), rec("b", 4)], [rec("c", 1), rec("d", 0)], [rec("e", -1)])
        ids = [r.entity_id for r in fetch_all(feed, lambda r: r.effective_time <= T0 + timedelta(hours=1), sleep=sleeps)]
        assert ids == ["a", "b"]
        assert feed.calls == [None, "c1"]

    def test_retries_failed_page_with_same_cursor(self, sleeps):
        """A transient failure re-requests the same page."""
        feed = PagedFeed([rec("a")], [rec("b")], errors={"c1": [TransientError("503")]})
        ids = [r.entity_id for r in fetch_all(feed, retry_policy=RetryPolicy(base_delay=0.5), sleep=sleeps)]
        assert ids == ["a", "b"]
        assert feed.calls == [None, "c1", "c1"]
        assert sleeps.calls == [0.5]

    def test_exhausted_retries_propagate(self, sleeps):
        """After the retry budget the page error ends the iteration."""
        feed = PagedFeed([rec("a")], [rec("b")], errors={"c1": [TransientError("503")] * 5})
        records = fetch_all(feed, retry_policy=RetryPolicy(max_retries=1), sleep=sleeps)
        assert next(records).entity_id == "a"
        with pytest.raises(RetriesExhaustedError):
            next(records)

    def test_rate_limiter_acquired_per_page(self, sleeps):
        """Every page request acquires a rate limiter token."""
        limiter = RateLimiter(1, burst_size=10, clock=lambda: 0.0)
        feed = PagedFeed([rec("a")], [rec("b")], [rec("c")])
        list(fetch_all(feed, rate_limiter=limiter, sleep=sleeps))
        assert limiter.tokens == 7


class TestIterPages:
    """Tests for iter_pages."""

    def test_yields_producing_cursor(self, sleeps):
        """Each page is paired with the cursor that produced it."""
        feed = PagedFeed([rec("a")], [rec("b")])
        assert [cursor for cursor, _ in iter_pages(feed, sleep=sleeps)] == [None, "c1"]

    def test_start_cursor_resumes(self, sleeps):
        """A start cursor skips the pages before it."""
        feed = PagedFeed([rec("a")], [rec("b")], [rec("c")])
        pages = list(iter_pages(feed, start_cursor="c1", sleep=sleeps))
        assert [p.items[0].entity_id for _, p in pages] == ["b", "c"]

    def test_repeated_cursor_stops(self, sleeps):
        """An upstream handing out the same cursor again does not loop forever."""
        calls = []

        def fetch_page(cursor):
            calls.append(cursor)
            return Page(items=[rec("x")], next_cursor="same")

        pages = list(iter_pages(fetch_page, sleep=sleeps))
        assert len(pages) == 2
        assert calls == [None, "same"]

    def test_cancellation_between_pages(self, sleeps):
        """A set cancel event stops before the next page request."""
        cancel = threading.Event()
        feed = PagedFeed([rec("a")], [rec("b")])
        pages = iter_pages(feed, cancel_event=cancel, sleep=sleeps)
        next(pages)
        cancel.set()
        with pytest.raises(SyncCancelled):
            next(pages)
        assert feed.calls == [None]


# ============================================================================
# PaginationConfig / states
# ============================================================================


class TestPaginationConfig:
    """Tests for PaginationConfig dataclass."""

    def test_default_config_is_none_strategy(self):
        """Default pagination config should use NONE strategy."""
        config = PaginationConfig()
        assert config.strategy == PaginationStrategy.NONE
        assert config.page_size == 100

    def test_from_dict(self):
        """Options dicts are turned into configs."""
        config = build_pagination_config_from_dict(
            {"pagination_type": "cursor", "cursor_param": "pageToken", "cursor_path": "nextPageToken"}
        )
        assert config.strategy == PaginationStrategy.CURSOR
        assert config.cursor_param == "pageToken"

    def test_from_dict_rejects_unknown_type(self):
        """Unknown pagination types are configuration errors."""
        with pytest.raises(ConfigurationError, match="pagination_type"):
            build_pagination_config_from_dict({"pagination_type": "scroll"})

    def test_from_dict_coerces_integers(self):
        """Sizes given as strings (e.g. from environment variables) become integers."""
        config = build_pagination_config_from_dict({"pagination_type": "page", "page_size": "50", "max_pages": "3"})
        assert config.page_size == 50
        assert config.max_pages == 3

    def test_from_dict_rejects_bad_page_size(self):
        """Page sizes must be positive integers."""
        with pytest.raises(ConfigurationError, match="page_size"):
            build_pagination_config_from_dict({"page_size": "lots"})
        with pytest.raises(ConfigurationError, match="page_size"):
            build_pagination_config_from_dict({"page_size": 0})

    def test_build_state_per_strategy(self):
        """build_pagination_state picks the matching state class."""
        expected = {
            PaginationStrategy.NONE: NoPaginationState,
            PaginationStrategy.OFFSET: OffsetPaginationState,
            PaginationStrategy.PAGE: PagePaginationState,
            PaginationStrategy.CURSOR: CursorPaginationState,
        }
        for strategy, cls in expected.items():
            assert isinstance(build_pagination_state(PaginationConfig(strategy=strategy)), cls)


class TestOffsetPaginationState:
    """Tests for offset/limit pagination."""

    def test_first_and_next_params(self):
        """Offset advances by page size while pages are full."""
        state = OffsetPaginationState(PaginationConfig(strategy=PaginationStrategy.OFFSET, page_size=2), {"q": "x"})
        assert state.build_params(None) == {"q": "x", "limit": 2, "offset": 0}
        cursor = state.next_cursor(None, [1, 2], {})
        assert cursor == "2"
        assert state.build_params(cursor)["offset"] == 2

    def test_partial_page_ends(self):
        """A short page is the last one."""
        state = OffsetPaginationState(PaginationConfig(strategy=PaginationStrategy.OFFSET, page_size=2))
        assert state.next_cursor("4", [1], {}) is None


class TestPagePaginationState:
    """Tests for page number pagination."""

    def test_pages_start_at_one(self):
        """Page numbers start at 1."""
        state = PagePaginationState(PaginationConfig(strategy=PaginationStrategy.PAGE, page_size=2, page_size_param="per_page"))
        assert state.build_params(None) == {"page": 1, "per_page": 2}
        assert state.next_cursor(None, [1, 2], []) == "2"

    def test_max_pages(self):
        """max_pages stops pagination."""
        state = PagePaginationState(PaginationConfig(strategy=PaginationStrategy.PAGE, page_size=1, max_pages=2))
        assert state.next_cursor("1", [1], []) == "2"
        assert state.next_cursor("2", [1], []) is None

    def test_empty_page_ends(self):
        """An empty page ends pagination."""
        state = PagePaginationState(PaginationConfig(strategy=PaginationStrategy.PAGE))
        assert state.next_cursor("3", [], []) is None


class TestCursorPaginationState:
    """Tests for cursor pagination."""

    def test_cursor_from_nested_path(self):
        """Cursors are extracted from a dotted path."""
        config = PaginationConfig(strategy=PaginationStrategy.CURSOR, cursor_path="meta.next")
        state = CursorPaginationState(config)
        assert state.next_cursor(None, [], {"meta": {"next": "abc"}}) == "abc"
        assert state.build_params("abc") == {"cursor": "abc"}

    def test_page_size_param(self):
        """page_size_param_for_cursor adds the page size to every request."""
        config = PaginationConfig(
            strategy=PaginationStrategy.CURSOR,
            page_size=250,
            cursor_param="pageToken",
            page_size_param_for_cursor="maxResults",
        )
        assert CursorPaginationState(config).build_params(None) == {"maxResults": 250}

    def test_missing_or_empty_cursor_ends(self):
        """A missing or empty cursor ends pagination."""
        state = CursorPaginationState(PaginationConfig(strategy=PaginationStrategy.CURSOR))
        assert state.next_cursor(None, [], {}) is None
        assert state.next_cursor(None, [], {"next_cursor": ""}) is None


class TestExtractPath:
    """Tests for extract_path."""

    def test_non_dict_data(self):
        """Lists and scalars have no paths."""
        assert extract_path([1, 2], "next") is None

    def test_numbers_become_strings(self):
        """Numeric cursors are returned as strings."""
        assert extract_path({"next": 5}, "next") == "5"
