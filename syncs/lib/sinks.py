"""Record sinks."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from syncs.lib.models import ChangeRecord, PartitionKey, Watermark

logger = logging.getLogger(__name__)

__all__ = ["CollectingSink"]


class CollectingSink:
    """Keeps everything in memory, grouped by partition.

    Safe to share between partition threads.
    """

    def __init__(self) -> None:
        self.records: Dict[PartitionKey, List[ChangeRecord]] = {}
        self.commits: Dict[PartitionKey, Optional[Watermark]] = {}
        self._lock = threading.Lock()

    def emit(self, key: PartitionKey, record: ChangeRecord) -> None:
        with self._lock:
            self.records.setdefault(key, []).append(record)

    def commit(self, key: PartitionKey, watermark: Optional[Watermark]) -> None:
        with self._lock:
            self.commits[key] = watermark
        logger.debug("Committed %s at %s", key, watermark)

    def records_for(self, partition: str, stream: Optional[str] = None) -> List[ChangeRecord]:
        with self._lock:
            return list(self.records.get(PartitionKey(partition, stream), []))

    def all_records(self) -> List[ChangeRecord]:
        with self._lock:
            return [record for records in self.records.values() for record in records]
