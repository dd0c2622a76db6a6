"""Change-feed consumption.

A change feed hands out a sync token at the end of a full listing; passing
that token back returns only what changed since, including deletions. The
reconciler walks the delta pages and pairs every record with the position
a crashed run should resume from.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from syncs.lib.models import ChangeRecord, ChangeTokenWatermark, FetchMode, PageSource
from syncs.lib.pagination import iter_pages
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy

logger = logging.getLogger(__name__)

__all__ = ["DeltaItem", "DeltaReconciler"]


@dataclass(frozen=True)
class DeltaItem:
    """A record plus the position to persist once it has been emitted.

    ``record`` is None for the checkpoint that closes the feed, whose
    position carries the new sync token.
    """

    record: Optional[ChangeRecord]
    position: ChangeTokenWatermark


class DeltaReconciler:
    """Reads one partition's change feed from a token.

    ``TokenExpiredError`` raised by the source propagates unchanged; the
    caller decides how to fall back.
    """

    def __init__(
        self,
        source: PageSource,
        partition: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.partition = partition
        self.retry_policy = retry_policy
        self.rate_limiter = rate_limiter
        self.cancel_event = cancel_event
        self._sleep = sleep

    def fetch_delta(self, token: str, resume_cursor: Optional[str] = None) -> Iterator[DeltaItem]:
        """Yield every change since ``token``.

        Records on a page carry ``(token, cursor of that page)``, so a run
        resumed from any of them re-reads at most one page. After the
        terminal page a checkpoint item carries ``(sync_token, None)``.
        """
        mode = FetchMode.delta(token)
        if resume_cursor:
            logger.info("Resuming change feed for %s at cursor %s", self.partition, resume_cursor)

        pages = iter_pages(
            lambda cursor: self.source.fetch_page(self.partition, cursor, mode),
            start_cursor=resume_cursor,
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            cancel_event=self.cancel_event,
            description=f"fetch changes for {self.partition}",
            sleep=self._sleep,
        )

        changes = 0
        deletes = 0
        try:
            for cursor, page in pages:
                position = ChangeTokenWatermark(token=token, resume_cursor=cursor)
                for record in page.items:
                    changes += 1
                    if record.is_tombstone:
                        deletes += 1
                    yield DeltaItem(record, position)

                if page.is_last:
                    if page.sync_token:
                        final = ChangeTokenWatermark(token=page.sync_token)
                    else:
                        logger.warning(
                            "Change feed for %s ended without a sync token; keeping the current one",
                            self.partition,
                        )
                        final = ChangeTokenWatermark(token=token)
                    yield DeltaItem(None, final)
        finally:
            pages.close()

        logger.info(
            "Read %d changes (%d deletions) from change feed for %s",
            changes,
            deletes,
            self.partition,
        )
