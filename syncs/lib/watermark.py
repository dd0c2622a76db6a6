"""Watermark persistence for incremental syncs.

Watermarks track how far each partition (and sub-stream) has been
synchronized, allowing the next run to resume from where the last one
left off. They live in one flat map keyed by ``PartitionKey.state_key``;
a ``StateBackend`` decides where that map is kept.

Merging is what keeps the positions safe:

- a cutoff never moves backwards;
- an active export job is not replaced by a different one until it goes
  stale;
- a change-feed position is simply replaced.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from syncs.lib.cache import PartitionCache
from syncs.lib.errors import MalformedStateError
from syncs.lib.jobs import is_stale
from syncs.lib.models import (
    AsyncJob,
    ChangeRecord,
    ChangeTokenWatermark,
    CutoffWatermark,
    PartitionKey,
    PendingJobWatermark,
    StateBackend,
    Watermark,
    utcnow,
    watermark_from_dict,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_STATE_DIR",
    "InMemoryStateBackend",
    "JsonFileStateBackend",
    "WatermarkStore",
]

# Default state directory - can be overridden via environment variable
DEFAULT_STATE_DIR = ".state"
STATE_DIR_ENV = "SYNC_STATE_DIR"

Observed = Union[Watermark, ChangeRecord, AsyncJob, datetime, None]


def _get_state_dir() -> Path:
    """Get the state directory path."""
    return Path(os.environ.get(STATE_DIR_ENV, DEFAULT_STATE_DIR))


# ============================================
# State backends
# ============================================


class InMemoryStateBackend:
    """State held in a dict; useful for tests and one-shot runs."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._state: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (initial or {}).items()}
        self._lock = threading.Lock()

    def load_state(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._state.get(key)
            return dict(value) if value is not None else None

    def save_state(self, key: str, state: Dict[str, Any]) -> None:
        with self._lock:
            self._state[key] = dict(state)

    def delete_state(self, key: str) -> bool:
        with self._lock:
            return self._state.pop(key, None) is not None

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._state)


class JsonFileStateBackend:
    """The whole flat state map stored as one JSON document.

    Writes go to a temporary file that replaces the document atomically,
    so a crash mid-write leaves the previous state intact.

    Example:
        backend = JsonFileStateBackend(name="github_issues")
        # -> .state/github_issues.json (or $SYNC_STATE_DIR/github_issues.json)
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        name: str = "sync_state",
        state_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        if path is not None:
            self.path = Path(path)
        else:
            directory = Path(state_dir) if state_dir is not None else _get_state_dir()
            self.path = directory / f"{name}.json"
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise MalformedStateError(
                f"State file {self.path} is not valid JSON: {e}",
            ) from e
        if not isinstance(data, dict):
            raise MalformedStateError(f"State file {self.path} must hold a JSON object", state=data)
        return data

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def load_state(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read().get(key)

    def save_state(self, key: str, state: Dict[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data[key] = state
            self._write(data)
        logger.debug("Saved state for %s to %s", key, self.path)

    def delete_state(self, key: str) -> bool:
        with self._lock:
            data = self._read()
            if key not in data:
                return False
            del data[key]
            self._write(data)
        return True

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._read())


# ============================================
# Watermark store
# ============================================


class WatermarkStore:
    """Typed watermark access on top of a ``StateBackend``.

    Args:
        backend: Where the flat state map lives (defaults to in-memory)
        staleness: Age after which an active export job counts as abandoned
        cutoff_lag: Subtracted from observed record times before they
            advance a cutoff, for upstreams whose timestamps settle late
        clock: Current time, injectable for tests

    Example:
        store = WatermarkStore(JsonFileStateBackend(name="github_issues"))
        key = PartitionKey("acme/widgets")
        current = store.get(key)
        ...
        store.merge(key, current, newest_record)
    """

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        *,
        staleness: timedelta = timedelta(days=7),
        cutoff_lag: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend: StateBackend = backend if backend is not None else InMemoryStateBackend()
        self.staleness = staleness
        self.cutoff_lag = cutoff_lag
        self._clock = clock
        self._cache: PartitionCache[str, Optional[Dict[str, Any]]] = PartitionCache()

    def get(self, key: PartitionKey) -> Optional[Watermark]:
        """Current watermark, or None when the partition was never synced.

        Raises:
            MalformedStateError: the stored entry has an unrecognizable shape
        """
        state_key = key.state_key
        raw = self._cache.get_or_load(state_key, lambda: self.backend.load_state(state_key))
        try:
            return watermark_from_dict(raw)
        except MalformedStateError as e:
            e.partition = key.partition
            e.stream = key.stream
            raise

    def put(self, key: PartitionKey, watermark: Optional[Watermark]) -> None:
        """Persist ``watermark`` unconditionally; None removes the entry."""
        if watermark is None:
            self.reset(key)
            return
        state_key = key.state_key
        data = watermark.to_dict()
        self.backend.save_state(state_key, data)
        self._cache.put(state_key, data)
        logger.debug("Saved watermark for %s: %s", key, data)

    def reset(self, key: PartitionKey) -> bool:
        """Delete the watermark to force a full resync.

        Returns:
            True if a watermark was deleted, False if there was none
        """
        deleted = self.backend.delete_state(key.state_key)
        self._cache.invalidate(key.state_key)
        if deleted:
            logger.info("Deleted watermark for %s", key)
        return deleted

    def clear(self) -> int:
        """Delete all watermarks.

        Use with caution - every partition restarts from the beginning.

        Returns:
            Number of watermarks deleted
        """
        count = 0
        for state_key in self.backend.list_keys():
            if self.backend.delete_state(state_key):
                count += 1
        self._cache.clear()
        logger.info("Cleared %d watermarks", count)
        return count

    def keys(self) -> List[PartitionKey]:
        return [PartitionKey.from_state_key(k) for k in self.backend.list_keys()]

    def export_state(self) -> Dict[str, Dict[str, Any]]:
        """The whole flat state map, as handed to a host between runs."""
        exported: Dict[str, Dict[str, Any]] = {}
        for state_key in self.backend.list_keys():
            state = self.backend.load_state(state_key)
            if state is not None:
                exported[state_key] = state
        return exported

    def import_state(self, state: Dict[str, Dict[str, Any]], *, replace: bool = True) -> None:
        """Load a flat state map produced by ``export_state``.

        Entries are validated before anything is written.
        """
        if not isinstance(state, dict):
            raise MalformedStateError("Sync state must be a JSON object", state=state)
        for state_key, entry in state.items():
            if entry is not None and not isinstance(entry, dict):
                raise MalformedStateError(f"State for '{state_key}' must be a JSON object", state=entry)
            watermark_from_dict(entry)

        if replace:
            for state_key in self.backend.list_keys():
                if state_key not in state:
                    self.backend.delete_state(state_key)
        for state_key, entry in state.items():
            if entry:
                self.backend.save_state(state_key, dict(entry))
        self._cache.clear()
        logger.info("Imported state for %d partitions", len(state))

    # --------------------------------------------
    # Merging
    # --------------------------------------------

    def merge(
        self,
        key: PartitionKey,
        current: Optional[Watermark],
        observed: Observed,
        *,
        cutoff_lag: Optional[timedelta] = None,
        staleness: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Watermark]:
        """Combine ``current`` with what a run observed and persist the result.

        ``observed`` may be a record or datetime (advances a cutoff), an
        ``AsyncJob`` (export job update) or a watermark of any variant.
        ``staleness`` and ``now`` override the store defaults when judging
        whether an active job may be replaced.
        Nothing is written when the merge leaves the watermark unchanged.

        Returns:
            The merged watermark
        """
        merged = self.compute_merge(current, observed, cutoff_lag=cutoff_lag, staleness=staleness, now=now)
        if merged is not None and merged != current:
            self.put(key, merged)
        return merged

    def compute_merge(
        self,
        current: Optional[Watermark],
        observed: Observed,
        *,
        cutoff_lag: Optional[timedelta] = None,
        staleness: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Watermark]:
        """The merge rules, without touching the backend."""
        if isinstance(observed, ChangeRecord):
            observed = observed.effective_time
        if observed is None:
            return current

        if isinstance(observed, datetime):
            lag = self.cutoff_lag if cutoff_lag is None else cutoff_lag
            return self.merge_cutoff(current, CutoffWatermark(observed - lag))
        if isinstance(observed, CutoffWatermark):
            return self.merge_cutoff(current, observed)
        if isinstance(observed, AsyncJob):
            return self.merge_job(current, observed, staleness=staleness, now=now)
        if isinstance(observed, PendingJobWatermark):
            return self.merge_job(current, observed.job, staleness=staleness, now=now)
        if isinstance(observed, ChangeTokenWatermark):
            return observed
        raise TypeError(f"Cannot merge {type(observed).__name__} into a watermark")

    @staticmethod
    def merge_cutoff(current: Optional[Watermark], observed: CutoffWatermark) -> Watermark:
        if isinstance(current, CutoffWatermark) and current.cutoff >= observed.cutoff:
            return current
        return observed

    def merge_job(
        self,
        current: Optional[Watermark],
        observed: AsyncJob,
        *,
        staleness: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Watermark:
        if not isinstance(current, PendingJobWatermark):
            return PendingJobWatermark(observed)

        job = current.job
        if (
            job.is_active
            and job.id != observed.id
            and not is_stale(
                job,
                now if now is not None else self._clock(),
                staleness if staleness is not None else self.staleness,
            )
        ):
            logger.warning(
                "Ignoring export job %s: job %s is still %s",
                observed.id,
                job.id,
                job.state.value,
            )
            return current
        return PendingJobWatermark(observed)

    def clear_stale_job(self, key: PartitionKey) -> bool:
        """Drop an abandoned active job so the next run starts fresh.

        Returns:
            True if a stale job was cleared
        """
        current = self.get(key)
        if not isinstance(current, PendingJobWatermark):
            return False
        if not is_stale(current.job, self._clock(), self.staleness):
            return False
        logger.warning(
            "Clearing stale export job %s for %s (state %s)",
            current.job.id,
            key,
            current.job.state.value,
        )
        return self.reset(key)
