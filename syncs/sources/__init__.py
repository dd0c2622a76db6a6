"""Connectors and the wiring that turns a ``SyncConfig`` into a run.

Usage:
    from syncs.lib.config import load_sync_config
    from syncs.sources import run_sync

    result = run_sync(load_sync_config("./github_issues.yaml"))
    print(result)
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Type

import httpx

from syncs.lib.config import SyncConfig
from syncs.lib.errors import ConfigurationError
from syncs.lib.http import ApiClient
from syncs.lib.models import RecordSink
from syncs.lib.runner import RunResult, SyncRunner
from syncs.lib.selector import FetchStrategySelector, StreamKind
from syncs.lib.sinks import CollectingSink
from syncs.lib.watermark import WatermarkStore
from syncs.sources.base import HttpSource
from syncs.sources.circleci_usage import CircleCIUsageSource
from syncs.sources.github_issues import GithubIssuesSource
from syncs.sources.google_calendar import GoogleCalendarEventsSource

logger = logging.getLogger(__name__)

__all__ = [
    "CircleCIUsageSource",
    "GithubIssuesSource",
    "GoogleCalendarEventsSource",
    "HttpSource",
    "SOURCES",
    "build_client",
    "build_runner",
    "build_selector",
    "build_source",
    "run_sync",
]

SOURCES: Dict[str, Type[HttpSource]] = {
    source.name: source
    for source in (GithubIssuesSource, GoogleCalendarEventsSource, CircleCIUsageSource)
}


def _source_class(config: SyncConfig) -> Type[HttpSource]:
    try:
        return SOURCES[config.source]
    except KeyError:
        raise ConfigurationError(
            f"Unknown source: {config.source!r}",
            field="source",
            value=config.source,
            suggestion=f"Use one of: {', '.join(sorted(SOURCES))}",
        )


def build_client(config: SyncConfig, *, transport: Optional[httpx.BaseTransport] = None) -> ApiClient:
    source_cls = _source_class(config)
    return ApiClient(
        config.base_url or source_cls.default_base_url,
        auth=config.auth.to_auth_config(),
        timeout=config.timeout,
        max_connections=max(config.concurrency, 10),
        transport=transport,
    )


def build_source(config: SyncConfig, client: ApiClient) -> HttpSource:
    source_cls = _source_class(config)
    return source_cls(client, partitions=config.partitions, options=config.options)


def build_selector(
    config: SyncConfig,
    source: HttpSource,
    *,
    store: Optional[WatermarkStore] = None,
    cancel_event: Optional[threading.Event] = None,
) -> FetchStrategySelector:
    """Selector for ``source`` with the retry, rate limit and window settings of ``config``."""
    windows = config.export_jobs.to_policy()
    if store is None:
        store = WatermarkStore(
            config.state.build(config.source),
            staleness=windows.staleness,
            cutoff_lag=config.cutoff_lag,
        )
    is_job_stream = source.kind == StreamKind.EXPORT_JOB
    return FetchStrategySelector(
        store,
        kind=source.kind,
        page_source=None if is_job_stream else source,  # type: ignore[arg-type]
        job_source=source if is_job_stream else None,  # type: ignore[arg-type]
        stream=config.stream,
        windows=windows,
        descending=source.descending,
        start_date=config.start_date,
        cutoff_lag=config.cutoff_lag,
        retry_policy=config.retry.to_policy(),
        rate_limiter=config.rate_limit.build(),
        cancel_event=cancel_event,
    )


def build_runner(
    config: SyncConfig,
    client: ApiClient,
    *,
    sink: Optional[RecordSink] = None,
    store: Optional[WatermarkStore] = None,
    cancel_event: Optional[threading.Event] = None,
) -> SyncRunner:
    source = build_source(config, client)
    selector = build_selector(config, source, store=store, cancel_event=cancel_event)
    return SyncRunner(
        source,
        selector,
        sink if sink is not None else CollectingSink(),
        concurrency=config.concurrency,
        sync_mode=config.mode,
        cancel_event=cancel_event,
    )


def run_sync(
    config: SyncConfig,
    *,
    sink: Optional[RecordSink] = None,
    store: Optional[WatermarkStore] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> RunResult:
    """Run one configured sync end to end.

    Applies the logging settings of ``config``, builds the HTTP client,
    connector, watermark store and runner, runs every partition and closes
    the client.

    Args:
        config: Validated sync configuration
        sink: Receives records and commits (default: ``CollectingSink``)
        store: Watermark store (default: built from ``config.state``)
        transport: httpx transport override, e.g. ``httpx.MockTransport``

    Raises:
        ConfigurationError: invalid configuration; nothing was fetched
    """
    config.logging.apply()
    logger.info("Running %s sync (mode=%s)", config.source, config.sync_mode)
    with build_client(config, transport=transport) as client:
        runner = build_runner(config, client, sink=sink, store=store)
        return runner.run()
