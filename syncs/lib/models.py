"""Core data model for incremental syncs.

Partition keys, change records, pages, async export jobs and the tagged
watermark variants persisted between runs, plus the protocols the engine
expects from connectors and hosts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from syncs.lib.errors import MalformedStateError

logger = logging.getLogger(__name__)

__all__ = [
    "PartitionKey",
    "ChangeType",
    "ChangeRecord",
    "Page",
    "JobState",
    "AsyncJob",
    "CutoffWatermark",
    "ChangeTokenWatermark",
    "PendingJobWatermark",
    "Watermark",
    "watermark_from_dict",
    "watermark_to_dict",
    "FetchKind",
    "FetchMode",
    "SyncMode",
    "PartitionEnumerator",
    "PageSource",
    "ExportJobSource",
    "StateBackend",
    "RecordSink",
    "parse_timestamp",
    "format_timestamp",
    "from_epoch_millis",
    "utcnow",
]


# ============================================
# Timestamp helpers
# ============================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """Parse an ISO-8601 string, epoch millis or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        return from_epoch_millis(value)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return parse_timestamp(value).isoformat().replace("+00:00", "Z")


def from_epoch_millis(value: Union[int, float]) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ============================================
# Records and pages
# ============================================


@dataclass(frozen=True)
class PartitionKey:
    """Scope of one independently synchronized unit.

    ``partition`` is opaque ("org/repo", a calendar id, ...). ``stream``
    discriminates sub-streams sharing a partition, e.g. statistic types.
    """

    partition: str
    stream: Optional[str] = None

    SEPARATOR = "::"

    @property
    def state_key(self) -> str:
        """Key in the flat sync-state map."""
        if self.stream is None:
            return self.partition
        return f"{self.stream}{self.SEPARATOR}{self.partition}"

    @classmethod
    def from_state_key(cls, key: str) -> "PartitionKey":
        stream, sep, partition = key.partition(cls.SEPARATOR)
        if not sep:
            return cls(partition=key)
        return cls(partition=partition, stream=stream)

    def __str__(self) -> str:
        return self.state_key


class ChangeType(Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeRecord:
    """A normalized change emitted to the record sink.

    Deletes are tombstones: they carry the entity id only.
    """

    entity_id: str
    change_type: ChangeType = ChangeType.UPSERT
    effective_time: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.change_type == ChangeType.DELETE and self.payload is not None:
            object.__setattr__(self, "payload", None)

    @property
    def is_tombstone(self) -> bool:
        return self.change_type == ChangeType.DELETE

    @classmethod
    def upsert(
        cls,
        entity_id: str,
        payload: Dict[str, Any],
        effective_time: Optional[datetime] = None,
    ) -> "ChangeRecord":
        return cls(
            entity_id=str(entity_id),
            change_type=ChangeType.UPSERT,
            effective_time=effective_time,
            payload=payload,
        )

    @classmethod
    def delete(cls, entity_id: str, effective_time: Optional[datetime] = None) -> "ChangeRecord":
        return cls(
            entity_id=str(entity_id),
            change_type=ChangeType.DELETE,
            effective_time=effective_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "change_type": self.change_type.value,
            "effective_time": format_timestamp(self.effective_time) if self.effective_time else None,
            "payload": self.payload,
        }


@dataclass
class Page:
    """One fetch call's worth of records.

    ``sync_token`` is only set on a change feed's terminal page.
    """

    items: List[ChangeRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    sync_token: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_cursor


# ============================================
# Async export jobs
# ============================================


class JobState(Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobState.CREATED, JobState.PROCESSING)


@dataclass(frozen=True)
class AsyncJob:
    """A server-side, time-windowed export job.

    ``payload`` holds upstream fields the engine does not interpret, such as
    download URLs of a completed export. It is emitted with status records
    but not persisted in the watermark.
    """

    window_start: datetime
    window_end: datetime
    state: JobState
    id: Optional[str] = None
    error_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "start": format_timestamp(self.window_start),
            "end": format_timestamp(self.window_end),
            "state": self.state.value,
        }
        if self.id is not None:
            data["job_id"] = self.id
        if self.error_reason is not None:
            data["error_reason"] = self.error_reason
        if self.created_at is not None:
            data["created_at"] = format_timestamp(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AsyncJob":
        start = _present(data, "start")
        end = _present(data, "end")
        state = _present(data, "state")
        if end is None or state is None:
            raise MalformedStateError("Export job state needs 'end' and 'state'", state=data)
        try:
            job_state = JobState(state)
            window_end = parse_timestamp(end)
            window_start = parse_timestamp(start) if start is not None else window_end
            created_at = _present(data, "created_at")
            return cls(
                id=_optional_str(data, "job_id"),
                window_start=window_start,
                window_end=window_end,
                state=job_state,
                error_reason=_optional_str(data, "error_reason"),
                created_at=parse_timestamp(created_at) if created_at is not None else None,
            )
        except ValueError as exc:
            raise MalformedStateError(f"Invalid export job state: {exc}", state=data) from exc


# ============================================
# Watermarks
# ============================================


@dataclass(frozen=True)
class CutoffWatermark:
    """Records with an effective time at or before ``cutoff`` are synchronized.

    Stored as ISO-8601 with microseconds; epoch milliseconds are still read.
    """

    cutoff: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"cutoff": format_timestamp(self.cutoff)}


@dataclass(frozen=True)
class ChangeTokenWatermark:
    """Position in a change feed.

    ``resume_cursor`` is the page cursor being consumed when the position
    was checkpointed; it is None once the feed was read to the end.
    """

    token: str
    resume_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"change_token": self.token}
        if self.resume_cursor is not None:
            data["resume_cursor"] = self.resume_cursor
        return data


@dataclass(frozen=True)
class PendingJobWatermark:
    """The latest known async export job for a partition."""

    job: AsyncJob

    def to_dict(self) -> Dict[str, Any]:
        return self.job.to_dict()


Watermark = Union[CutoffWatermark, ChangeTokenWatermark, PendingJobWatermark]


def _present(data: Dict[str, Any], key: str) -> Any:
    """Return the value for ``key``; absent and null are the same thing."""
    return data.get(key)


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = _present(data, key)
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise MalformedStateError(f"'{key}' must be a string", state=data)
    return str(value)


def watermark_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Watermark]:
    """Decode one entry of the flat sync-state map.

    Returns None for empty state. The variant is chosen by which fields are
    present: a change token wins over a job descriptor, which wins over a
    cutoff.
    """
    if not data:
        return None
    if not isinstance(data, dict):
        raise MalformedStateError("Watermark state must be a JSON object", state=data)

    token = _present(data, "change_token")
    if token is not None:
        if not isinstance(token, str):
            raise MalformedStateError("'change_token' must be a string", state=data)
        return ChangeTokenWatermark(token=token, resume_cursor=_optional_str(data, "resume_cursor"))

    if _present(data, "job_id") is not None or _present(data, "state") is not None:
        return PendingJobWatermark(job=AsyncJob.from_dict(data))

    cutoff = _present(data, "cutoff")
    if cutoff is not None:
        try:
            return CutoffWatermark(cutoff=parse_timestamp(cutoff))
        except (ValueError, OverflowError, OSError) as exc:
            raise MalformedStateError(f"Invalid cutoff: {exc}", state=data) from exc

    logger.debug("State entry has no recognized watermark fields: %s", sorted(data))
    return None


def watermark_to_dict(watermark: Optional[Watermark]) -> Dict[str, Any]:
    if watermark is None:
        return {}
    return watermark.to_dict()


# ============================================
# Fetch modes
# ============================================


class SyncMode(Enum):
    """What the caller asked for."""

    FULL_REFRESH = "full_refresh"
    INCREMENTAL = "incremental"


class FetchKind(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DELTA = "delta"


@dataclass(frozen=True)
class FetchMode:
    """The ``mode`` argument passed to ``PageSource.fetch_page``."""

    kind: FetchKind
    since: Optional[datetime] = None
    token: Optional[str] = None

    @classmethod
    def full(cls, since: Optional[datetime] = None) -> "FetchMode":
        return cls(kind=FetchKind.FULL, since=since)

    @classmethod
    def incremental(cls, cutoff: datetime) -> "FetchMode":
        return cls(kind=FetchKind.INCREMENTAL, since=cutoff)

    @classmethod
    def delta(cls, token: str) -> "FetchMode":
        return cls(kind=FetchKind.DELTA, token=token)


# ============================================
# Collaborator protocols
# ============================================


class PartitionEnumerator(Protocol):
    def enumerate_partitions(self) -> Iterable[str]: ...


class PageSource(Protocol):
    def fetch_page(self, partition: str, cursor: Optional[str], mode: FetchMode) -> Page: ...


class ExportJobSource(Protocol):
    def create_export_job(self, partition: str, window_start: datetime, window_end: datetime) -> AsyncJob: ...

    def get_export_job(self, partition: str, job_id: str) -> AsyncJob: ...


class StateBackend(Protocol):
    def load_state(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save_state(self, key: str, state: Dict[str, Any]) -> None: ...

    def delete_state(self, key: str) -> bool: ...

    def list_keys(self) -> List[str]: ...


class RecordSink(Protocol):
    def emit(self, key: PartitionKey, record: ChangeRecord) -> None: ...

    def commit(self, key: PartitionKey, watermark: Optional[Watermark]) -> None: ...
