"""Structured exception hierarchy for sync runs.

Errors are partition-scoped wherever possible: the runner catches
everything below ``SyncError`` per partition and keeps going, except
``ConfigurationError`` which aborts the run before any network call.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "SyncError",
    "TransientError",
    "RateLimitError",
    "RetriesExhaustedError",
    "RateLimitExhaustedError",
    "TokenExpiredError",
    "PermissionDeniedError",
    "MalformedResponseError",
    "MalformedStateError",
    "ConfigurationError",
    "SyncCancelled",
]


class SyncError(Exception):
    """Base exception for all sync errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        partition: Optional[str] = None,
        stream: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.partition = partition
        self.stream = stream
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if partition or stream:
            context = f"{stream}::{partition}" if stream else str(partition)
            parts.insert(0, f"[{context}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "partition": self.partition,
            "stream": self.stream,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class TransientError(SyncError):
    """A failure worth retrying: timeouts, 5xx responses, dropped connections."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.cause = cause

        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if cause is not None:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class RateLimitError(TransientError):
    """The upstream asked us to slow down (HTTP 429 or equivalent).

    ``retry_after`` carries the upstream's requested wait in seconds, when
    it sent one.
    """

    def __init__(
        self,
        message: str = "Rate limited by upstream",
        *,
        retry_after: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        self.retry_after = retry_after

        details = kwargs.pop("details", {})
        if retry_after is not None:
            details["retry_after"] = retry_after

        kwargs.setdefault("status_code", 429)
        super().__init__(message, details=details, **kwargs)


class RetriesExhaustedError(SyncError):
    """Transient failures kept happening after the last allowed retry."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error

        details = kwargs.pop("details", {})
        details["attempts"] = attempts
        if last_error is not None:
            details["last_error"] = str(last_error)

        super().__init__(message, details=details, **kwargs)


class RateLimitExhaustedError(RetriesExhaustedError):
    """Still rate limited after the last allowed retry."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "suggestion",
            "Lower requests_per_second or raise retry.max_retries for this upstream.",
        )
        super().__init__(message, **kwargs)


class TokenExpiredError(SyncError):
    """A change-feed token was rejected as invalid or expired.

    Not a failure from the caller's point of view: the selector answers it
    with a full fetch.
    """

    def __init__(self, message: str = "Change token is no longer valid", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class PermissionDeniedError(SyncError):
    """The credentials in use cannot read this partition."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs: Any) -> None:
        self.status_code = status_code

        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(message, details=details, **kwargs)


class MalformedResponseError(SyncError):
    """The upstream answered with a payload we cannot interpret.

    Never retried: the same request is assumed to produce the same payload.
    """

    def __init__(self, message: str, *, payload: Any = None, **kwargs: Any) -> None:
        self.payload = payload

        details = kwargs.pop("details", {})
        if payload is not None:
            details["payload"] = repr(payload)[:200]

        super().__init__(message, details=details, **kwargs)


class MalformedStateError(SyncError):
    """Persisted sync state does not have a recognizable watermark shape."""

    def __init__(self, message: str, *, state: Any = None, **kwargs: Any) -> None:
        self.state = state

        details = kwargs.pop("details", {})
        if state is not None:
            details["state"] = repr(state)[:200]

        suggestion = kwargs.pop("suggestion", None) or (
            "Inspect the state file and reset this partition if it was edited by hand."
        )
        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class ConfigurationError(SyncError):
    """Invalid sync configuration, raised before any network call."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class SyncCancelled(SyncError):
    """The run was cancelled between two pages or poll steps."""
