"""Sync library modules.

This package contains the core abstractions of the sync engine: the data
model, watermark store, fetch strategy selector, paginated fetcher, delta
reconciler, export job poller and runner, plus the HTTP, configuration and
logging plumbing they share.
"""

from syncs.lib.cache import PartitionCache
from syncs.lib.config import (
    ExportJobConfig,
    RateLimitConfig,
    RetryConfig,
    StateConfig,
    SyncConfig,
    SyncSettings,
    config_from_dict,
    load_sync_config,
)
from syncs.lib.delta import DeltaItem, DeltaReconciler
from syncs.lib.env import expand_env_vars, expand_options, load_env_file
from syncs.lib.errors import (
    ConfigurationError,
    MalformedResponseError,
    MalformedStateError,
    PermissionDeniedError,
    RateLimitError,
    RateLimitExhaustedError,
    RetriesExhaustedError,
    SyncCancelled,
    SyncError,
    TokenExpiredError,
    TransientError,
)
from syncs.lib.http import ApiClient, AuthConfig, AuthType, build_auth_headers, classify_response
from syncs.lib.jobs import AsyncJobPoller, ExportWindowPolicy
from syncs.lib.logging import JSONFormatter, SyncLogger, get_sync_logger, setup_logging
from syncs.lib.models import (
    AsyncJob,
    ChangeRecord,
    ChangeTokenWatermark,
    ChangeType,
    CutoffWatermark,
    FetchKind,
    FetchMode,
    JobState,
    Page,
    PartitionKey,
    PendingJobWatermark,
    SyncMode,
    Watermark,
)
from syncs.lib.pagination import (
    CursorPaginationState,
    NoPaginationState,
    OffsetPaginationState,
    PagePaginationState,
    PaginationConfig,
    PaginationState,
    PaginationStrategy,
    build_pagination_config_from_dict,
    build_pagination_state,
    fetch_all,
    iter_pages,
)
from syncs.lib.rate_limiter import RateLimiter
from syncs.lib.resilience import RetryPolicy, call_with_retry
from syncs.lib.runner import PartitionResult, PartitionStatus, RunResult, SyncRunner
from syncs.lib.selector import Decision, FetchStrategySelector, Strategy, StreamKind, select
from syncs.lib.sinks import CollectingSink
from syncs.lib.watermark import InMemoryStateBackend, JsonFileStateBackend, WatermarkStore

__all__ = [
    # Models
    "AsyncJob",
    "ChangeRecord",
    "ChangeTokenWatermark",
    "ChangeType",
    "CutoffWatermark",
    "FetchKind",
    "FetchMode",
    "JobState",
    "Page",
    "PartitionKey",
    "PendingJobWatermark",
    "SyncMode",
    "Watermark",
    # Errors
    "ConfigurationError",
    "MalformedResponseError",
    "MalformedStateError",
    "PermissionDeniedError",
    "RateLimitError",
    "RateLimitExhaustedError",
    "RetriesExhaustedError",
    "SyncCancelled",
    "SyncError",
    "TokenExpiredError",
    "TransientError",
    # Fetching
    "CursorPaginationState",
    "NoPaginationState",
    "OffsetPaginationState",
    "PagePaginationState",
    "PaginationConfig",
    "PaginationState",
    "PaginationStrategy",
    "build_pagination_config_from_dict",
    "build_pagination_state",
    "fetch_all",
    "iter_pages",
    "RateLimiter",
    "RetryPolicy",
    "call_with_retry",
    # State
    "InMemoryStateBackend",
    "JsonFileStateBackend",
    "PartitionCache",
    "WatermarkStore",
    # Strategies
    "AsyncJobPoller",
    "Decision",
    "DeltaItem",
    "DeltaReconciler",
    "ExportWindowPolicy",
    "FetchStrategySelector",
    "Strategy",
    "StreamKind",
    "select",
    # Running
    "CollectingSink",
    "PartitionResult",
    "PartitionStatus",
    "RunResult",
    "SyncRunner",
    # HTTP
    "ApiClient",
    "AuthConfig",
    "AuthType",
    "build_auth_headers",
    "classify_response",
    # Configuration
    "ExportJobConfig",
    "RateLimitConfig",
    "RetryConfig",
    "StateConfig",
    "SyncConfig",
    "SyncSettings",
    "config_from_dict",
    "load_sync_config",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Logging
    "JSONFormatter",
    "SyncLogger",
    "get_sync_logger",
    "setup_logging",
]
