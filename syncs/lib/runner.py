"""Sync runner: partitions in, change records and watermarks out.

Enumerates partitions, runs the fetch strategy selector for each of them
(optionally in parallel), forwards records to the sink and collects a
per-partition outcome. A failing partition never stops its siblings.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from syncs.lib.errors import ConfigurationError, PermissionDeniedError, SyncCancelled, SyncError
from syncs.lib.logging import get_sync_logger
from syncs.lib.models import PartitionEnumerator, PartitionKey, RecordSink, SyncMode, Watermark
from syncs.lib.selector import FetchStrategySelector

logger = logging.getLogger(__name__)

__all__ = ["PartitionResult", "PartitionStatus", "RunResult", "SyncRunner"]


class PartitionStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PartitionResult:
    """Outcome of one partition's sync."""

    key: PartitionKey
    status: PartitionStatus
    records: int = 0
    watermark: Optional[Watermark] = None
    error: Optional[BaseException] = None
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data: Dict[str, Any] = {
            "partition": self.key.partition,
            "stream": self.key.stream,
            "status": self.status.value,
            "records": self.records,
            "watermark": self.watermark.to_dict() if self.watermark is not None else None,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }
        if self.error is not None:
            data["error"] = (
                self.error.to_dict() if isinstance(self.error, SyncError) else {"message": str(self.error)}
            )
        return data


@dataclass
class RunResult:
    """Structured result from a sync run."""

    partitions: List[PartitionResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def _with_status(self, status: PartitionStatus) -> List[PartitionResult]:
        return [p for p in self.partitions if p.status == status]

    @property
    def succeeded(self) -> List[PartitionResult]:
        return self._with_status(PartitionStatus.SUCCESS)

    @property
    def skipped(self) -> List[PartitionResult]:
        return self._with_status(PartitionStatus.SKIPPED)

    @property
    def failed(self) -> List[PartitionResult]:
        return self._with_status(PartitionStatus.FAILED)

    @property
    def cancelled(self) -> List[PartitionResult]:
        return self._with_status(PartitionStatus.CANCELLED)

    @property
    def total_records(self) -> int:
        return sum(p.records for p in self.partitions)

    @property
    def success(self) -> bool:
        return not self.failed and not self.cancelled

    def get(self, partition: str, stream: Optional[str] = None) -> Optional[PartitionResult]:
        key = PartitionKey(partition, stream)
        for result in self.partitions:
            if result.key == key:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total_records": self.total_records,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "partitions": [p.to_dict() for p in self.partitions],
        }

    def __repr__(self) -> str:
        return (
            f"RunResult({len(self.succeeded)} succeeded, {len(self.skipped)} skipped, "
            f"{len(self.failed)} failed, {len(self.cancelled)} cancelled, "
            f"{self.total_records} records)"
        )


class SyncRunner:
    """Runs a stream across every partition an enumerator yields.

    Example:
        runner = SyncRunner(repos, selector, sink, concurrency=4)
        result = runner.run()
        for failed in result.failed:
            print(failed.key, failed.error)
    """

    def __init__(
        self,
        enumerator: PartitionEnumerator,
        selector: FetchStrategySelector,
        sink: RecordSink,
        *,
        concurrency: int = 1,
        sync_mode: SyncMode = SyncMode.INCREMENTAL,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1", field="concurrency", value=concurrency)
        self.enumerator = enumerator
        self.selector = selector
        self.sink = sink
        self.concurrency = concurrency
        self.sync_mode = sync_mode
        self.cancel_event = cancel_event or selector.cancel_event or threading.Event()
        selector.use_cancel_event(self.cancel_event)

    def cancel(self) -> None:
        """Stop at the next page or poll step of every running partition."""
        self.cancel_event.set()

    def run(self) -> RunResult:
        self.selector.validate()

        start = time.time()
        keys = [self.selector.key_for(p) for p in self.enumerator.enumerate_partitions()]
        logger.info(
            "Starting sync of %d partitions (stream=%s, concurrency=%d, mode=%s)",
            len(keys),
            self.selector.stream,
            self.concurrency,
            self.sync_mode.value,
        )

        result = RunResult()
        if self.concurrency == 1 or len(keys) <= 1:
            for key in keys:
                result.partitions.append(self.sync_partition(key))
        else:
            with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                future_to_key = {executor.submit(self.sync_partition, key): key for key in keys}
                for future in as_completed(future_to_key):
                    result.partitions.append(future.result())

            order = {key: i for i, key in enumerate(keys)}
            result.partitions.sort(key=lambda p: order[p.key])

        result.elapsed_seconds = time.time() - start
        logger.info(
            "Sync complete: %d succeeded, %d skipped, %d failed, %d cancelled, %d records",
            len(result.succeeded),
            len(result.skipped),
            len(result.failed),
            len(result.cancelled),
            result.total_records,
        )
        return result

    def sync_partition(self, key: PartitionKey) -> PartitionResult:
        """Sync one partition; errors other than ConfigurationError end up in the result."""
        start = time.time()
        count = 0

        def finish(status: PartitionStatus, error: Optional[BaseException] = None) -> PartitionResult:
            return PartitionResult(
                key=key,
                status=status,
                records=count,
                watermark=self._current_watermark(key),
                error=error,
                elapsed_seconds=time.time() - start,
            )

        if self.cancel_event.is_set():
            return finish(PartitionStatus.CANCELLED, SyncCancelled("Cancelled before start", partition=key.partition))

        try:
            for record in self.selector.run(key, self.sync_mode):
                self.sink.emit(key, record)
                count += 1
        except ConfigurationError:
            raise
        except PermissionDeniedError as e:
            logger.warning("Skipping %s: %s", key, e.message)
            return finish(PartitionStatus.SKIPPED, e)
        except SyncCancelled as e:
            logger.warning("Sync of %s cancelled after %d records", key, count)
            return finish(PartitionStatus.CANCELLED, e)
        except Exception as e:
            if isinstance(e, SyncError) and e.partition is None:
                e.partition = key.partition
                e.stream = key.stream
            logger.error("Sync of %s failed after %d records: %s", key, count, e, exc_info=True)
            return finish(PartitionStatus.FAILED, e)

        watermark = self._current_watermark(key)
        self.sink.commit(key, watermark)
        partition_log = get_sync_logger(__name__).bind(partition=key.partition, stream=key.stream)
        partition_log.info("Synced %s: %d records", key, count)
        partition_log.metric("records_synced", count, unit="records")
        return PartitionResult(
            key=key,
            status=PartitionStatus.SUCCESS,
            records=count,
            watermark=watermark,
            elapsed_seconds=time.time() - start,
        )

    def _current_watermark(self, key: PartitionKey) -> Optional[Watermark]:
        try:
            return self.selector.store.get(key)
        except SyncError:
            return None
