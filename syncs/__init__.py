"""Incremental sync engine for paginated REST connectors.

Per partition, the engine decides between a full fetch and resuming from a
stored watermark (a cutoff timestamp, a change-feed token or a pending
export job), fetches under a shared rate limit and retry ladder, and
merges the new position back into the watermark store.

Usage:
    from syncs.lib.config import load_sync_config
    from syncs.sources import run_sync

    result = run_sync(load_sync_config("./github_issues.yaml"))
"""

from syncs.lib.models import ChangeRecord, PartitionKey, SyncMode
from syncs.lib.runner import RunResult, SyncRunner
from syncs.lib.selector import FetchStrategySelector, StreamKind
from syncs.lib.watermark import WatermarkStore

__version__ = "0.1.0"

__all__ = [
    "ChangeRecord",
    "FetchStrategySelector",
    "PartitionKey",
    "RunResult",
    "StreamKind",
    "SyncMode",
    "SyncRunner",
    "WatermarkStore",
    "__version__",
]
