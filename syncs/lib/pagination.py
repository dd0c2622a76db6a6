"""Paginated fetching.

``fetch_all`` drives repeated ``fetch_page(cursor)`` calls through the
shared rate limiter and retry ladder, lazily yielding records. The
pagination state machines below translate an opaque cursor string into
query parameters for the common REST pagination patterns, so every
strategy plugs into the same fetch loop.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from syncs.lib.errors import ConfigurationError, SyncCancelled
from syncs.lib.models import ChangeRecord, Page
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

__all__ = [
    "fetch_all",
    "iter_pages",
    "PaginationStrategy",
    "PaginationConfig",
    "PaginationState",
    "NoPaginationState",
    "OffsetPaginationState",
    "PagePaginationState",
    "CursorPaginationState",
    "build_pagination_state",
    "build_pagination_config_from_dict",
]

FetchPage = Callable[[Optional[str]], Page]
StopPredicate = Callable[[ChangeRecord], bool]


# ============================================
# Fetch loop
# ============================================


def iter_pages(
    fetch_page: FetchPage,
    *,
    start_cursor: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
    rate_limiter: Optional[RateLimiter] = None,
    cancel_event: Optional[threading.Event] = None,
    description: str = "fetch page",
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[Tuple[Optional[str], Page]]:
    """Yield ``(cursor, page)`` pairs until a page has no next cursor.

    ``cursor`` is the cursor that produced ``page``; a caller that wants to
    resume after a crash persists it and passes it back as ``start_cursor``.
    """
    policy = retry_policy or RetryPolicy.default()
    cursor = start_cursor
    pages = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled(f"Cancelled before page {pages + 1}")

        def do_fetch(current: Optional[str] = cursor) -> Page:
            if rate_limiter is not None:
                rate_limiter.acquire()
            return fetch_page(current)

        page = call_with_retry(do_fetch, policy, description, sleep=sleep)
        pages += 1
        logger.debug(
            "Fetched page %d with %d records (next cursor: %s)",
            pages,
            len(page.items),
            page.next_cursor,
        )

        yield cursor, page

        if page.is_last:
            return
        if page.next_cursor == cursor:
            logger.warning("Upstream returned the same cursor twice (%s); stopping", cursor)
            return
        cursor = page.next_cursor


def fetch_all(
    fetch_page: FetchPage,
    stop_predicate: Optional[StopPredicate] = None,
    **kwargs: Any,
) -> Iterator[ChangeRecord]:
    """Yield every record across all pages.

    When ``stop_predicate(record)`` is true the record is dropped, the rest
    of the current page is skipped and no further page is requested. Use it
    only with feeds sorted newest first, where the first already-synced
    record means nothing newer remains.

    Keyword arguments are passed to ``iter_pages``.
    """
    pages = iter_pages(fetch_page, **kwargs)
    try:
        for _, page in pages:
            for record in page.items:
                if stop_predicate is not None and stop_predicate(record):
                    logger.debug("Stop predicate matched %s; no more pages", record.entity_id)
                    return
                yield record
    finally:
        pages.close()


# ============================================
# HTTP pagination strategies
# ============================================


class PaginationStrategy(Enum):
    """Supported pagination strategies."""

    NONE = "none"
    OFFSET = "offset"
    PAGE = "page"
    CURSOR = "cursor"


@dataclass
class PaginationConfig:
    """Configuration for API pagination.

    Examples:
        # Offset pagination (offset/limit params)
        config = PaginationConfig(
            strategy=PaginationStrategy.OFFSET,
            page_size=100,
            offset_param="offset",
            limit_param="limit",
        )

        # Cursor pagination (cursor-based)
        config = PaginationConfig(
            strategy=PaginationStrategy.CURSOR,
            cursor_param="pageToken",
            cursor_path="nextPageToken",
        )
    """

    strategy: PaginationStrategy = PaginationStrategy.NONE
    page_size: int = 100

    # Offset pagination params
    offset_param: str = "offset"
    limit_param: str = "limit"

    # Page pagination params
    page_param: str = "page"
    page_size_param: str = "page_size"
    max_pages: Optional[int] = None

    # Cursor pagination params
    cursor_param: str = "cursor"
    cursor_path: str = "next_cursor"
    page_size_param_for_cursor: Optional[str] = None


class PaginationState(ABC):
    """Base class for pagination state machines.

    The position inside a paginated listing is carried in an opaque cursor
    string (None for the first page), which keeps the state machines
    stateless and the position persistable.
    """

    def __init__(
        self,
        config: PaginationConfig,
        base_params: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.base_params = dict(base_params or {})

    @abstractmethod
    def build_params(self, cursor: Optional[str]) -> Dict[str, Any]:
        """Build query parameters for the page at ``cursor``."""
        ...

    @abstractmethod
    def next_cursor(
        self,
        cursor: Optional[str],
        records: List[Any],
        data: Any,
    ) -> Optional[str]:
        """Cursor of the page after ``cursor``, or None when done."""
        ...

    @abstractmethod
    def describe(self, cursor: Optional[str]) -> str:
        """Get a human-readable description of a position for logging."""
        ...


class NoPaginationState(PaginationState):
    """State for single-request (non-paginated) APIs."""

    def build_params(self, cursor: Optional[str]) -> Dict[str, Any]:
        return dict(self.base_params)

    def next_cursor(self, cursor: Optional[str], records: List[Any], data: Any) -> Optional[str]:
        return None

    def describe(self, cursor: Optional[str]) -> str:
        return "(no pagination)"


class OffsetPaginationState(PaginationState):
    """State for offset/limit pagination.

    Typical API pattern:
        GET /items?offset=0&limit=100
        GET /items?offset=100&limit=100
        ...
    """

    def build_params(self, cursor: Optional[str]) -> Dict[str, Any]:
        params = dict(self.base_params)
        params[self.config.limit_param] = self.config.page_size
        params[self.config.offset_param] = int(cursor or 0)
        return params

    def next_cursor(self, cursor: Optional[str], records: List[Any], data: Any) -> Optional[str]:
        if not records or len(records) < self.config.page_size:
            return None
        return str(int(cursor or 0) + self.config.page_size)

    def describe(self, cursor: Optional[str]) -> str:
        return f"at offset {int(cursor or 0)}"


class PagePaginationState(PaginationState):
    """State for page number pagination.

    Typical API pattern:
        GET /items?page=1&per_page=100
        GET /items?page=2&per_page=100
        ...
    """

    def build_params(self, cursor: Optional[str]) -> Dict[str, Any]:
        params = dict(self.base_params)
        params[self.config.page_param] = int(cursor or 1)
        params[self.config.page_size_param] = self.config.page_size
        return params

    def next_cursor(self, cursor: Optional[str], records: List[Any], data: Any) -> Optional[str]:
        if not records or len(records) < self.config.page_size:
            return None
        next_page = int(cursor or 1) + 1
        if self.config.max_pages and next_page > self.config.max_pages:
            logger.info("Reached max_pages limit of %d", self.config.max_pages)
            return None
        return str(next_page)

    def describe(self, cursor: Optional[str]) -> str:
        return f"from page {int(cursor or 1)}"


class CursorPaginationState(PaginationState):
    """State for cursor-based pagination.

    Typical API pattern:
        GET /items
        -> Response: {"items": [...], "next_cursor": "abc123"}
        GET /items?cursor=abc123
        -> Response: {"items": [...], "next_cursor": "def456"}
        ...
    """

    def build_params(self, cursor: Optional[str]) -> Dict[str, Any]:
        params = dict(self.base_params)
        if self.config.page_size_param_for_cursor:
            params[self.config.page_size_param_for_cursor] = self.config.page_size
        if cursor:
            params[self.config.cursor_param] = cursor
        return params

    def next_cursor(self, cursor: Optional[str], records: List[Any], data: Any) -> Optional[str]:
        return extract_path(data, self.config.cursor_path)

    def describe(self, cursor: Optional[str]) -> str:
        if cursor:
            return f"(cursor={cursor[:20]}...)" if len(cursor) > 20 else f"(cursor={cursor})"
        return "(cursor pagination, first page)"


def extract_path(data: Any, path: str) -> Optional[str]:
    """Extract a string value from a dotted path like "meta.pagination.next"."""
    if not isinstance(data, dict):
        return None

    obj: Any = data
    for key in path.split("."):
        if isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return None
        if obj is None:
            return None

    if isinstance(obj, str):
        return obj or None
    return str(obj)


def build_pagination_state(
    config: PaginationConfig,
    base_params: Optional[Dict[str, Any]] = None,
) -> PaginationState:
    """Create appropriate pagination state from configuration."""
    if config.strategy == PaginationStrategy.OFFSET:
        return OffsetPaginationState(config, base_params)
    elif config.strategy == PaginationStrategy.PAGE:
        return PagePaginationState(config, base_params)
    elif config.strategy == PaginationStrategy.CURSOR:
        return CursorPaginationState(config, base_params)
    else:
        return NoPaginationState(config, base_params)


def build_pagination_config_from_dict(
    options: Dict[str, Any],
) -> PaginationConfig:
    """Build PaginationConfig from a dictionary of options.

    Expected keys:
        - pagination_type: "none", "offset", "page", "cursor"
        - page_size, offset_param, limit_param, page_param, page_size_param,
          max_pages, cursor_param, cursor_path
    """
    pagination_type = str(options.get("pagination_type", "none")).lower()

    try:
        strategy = PaginationStrategy(pagination_type)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported pagination_type: '{pagination_type}'. "
            f"Use 'offset', 'page', 'cursor', or 'none'",
            field="pagination_type",
            value=pagination_type,
        )

    def as_int(key: str, default: Optional[int]) -> Optional[int]:
        value = options.get(key, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"{key} must be an integer, got {value!r}",
                field=key,
                value=value,
            )

    page_size = as_int("page_size", 100)
    if page_size is None or page_size < 1:
        raise ConfigurationError(
            f"page_size must be at least 1, got {page_size!r}",
            field="page_size",
            value=page_size,
        )

    return PaginationConfig(
        strategy=strategy,
        page_size=page_size,
        offset_param=options.get("offset_param", "offset"),
        limit_param=options.get("limit_param", "limit"),
        page_param=options.get("page_param", "page"),
        page_size_param=options.get("page_size_param", "page_size"),
        max_pages=as_int("max_pages", None),
        cursor_param=options.get("cursor_param", "cursor"),
        cursor_path=options.get("cursor_path", "next_cursor"),
        page_size_param_for_cursor=options.get("page_size_param_for_cursor"),
    )
