"""CircleCI usage exports, one organization per partition.

CircleCI builds usage reports asynchronously: a POST creates an export
job for a window of at most 32 days, and the job is polled until it is
completed (with download URLs) or failed. The engine decides which
window to request and when; this connector only speaks the API.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from syncs.lib.errors import MalformedResponseError
from syncs.lib.jobs import Window
from syncs.lib.models import AsyncJob, JobState, format_timestamp, parse_timestamp
from syncs.lib.selector import StreamKind
from syncs.sources.base import HttpSource, require_field, require_list

logger = logging.getLogger(__name__)

__all__ = ["CircleCIUsageSource"]

# Response fields mapped onto AsyncJob; everything else is passed through.
_JOB_FIELDS = ("usage_export_job_id", "state", "start", "end", "error_reason")


class CircleCIUsageSource(HttpSource):
    """Usage export jobs of CircleCI organizations (partition = org id)."""

    name = "circleci_usage"
    kind = StreamKind.EXPORT_JOB
    default_base_url = "https://circleci.com/api/v2"

    def discover_partitions(self) -> List[str]:
        data = self.client.get_json("/me/collaborations")
        return [str(require_field(org, "id")) for org in require_list(data, None)]

    def create_export_job(self, partition: str, window_start: datetime, window_end: datetime) -> AsyncJob:
        body = {"start": format_timestamp(window_start), "end": format_timestamp(window_end)}
        data = self.client.post_json(
            f"/organizations/{partition}/usage_export_job",
            body,
            partition=partition,
        )
        return self.parse_job(data, partition, default_window=(window_start, window_end))

    def get_export_job(self, partition: str, job_id: str) -> AsyncJob:
        data = self.client.get_json(
            f"/organizations/{partition}/usage_export_job/{job_id}",
            partition=partition,
        )
        job = self.parse_job(data, partition)
        if job.state == JobState.COMPLETED:
            urls = job.payload.get("download_urls") or []
            logger.info("Usage export %s for %s has %d file(s) ready", job_id, partition, len(urls))
        return job

    def parse_job(
        self,
        data: Any,
        partition: Optional[str] = None,
        *,
        default_window: Optional[Window] = None,
    ) -> AsyncJob:
        """Turn a usage export job response into an ``AsyncJob``.

        Raises:
            MalformedResponseError: not an object, no window or an unknown state
        """
        if not isinstance(data, dict):
            raise MalformedResponseError("Usage export response is not an object", payload=data, partition=partition)

        raw_state = str(require_field(data, "state", partition=partition)).lower()
        try:
            state = JobState(raw_state)
        except ValueError:
            raise MalformedResponseError(
                f"Unknown usage export state: {raw_state!r}",
                payload=data,
                partition=partition,
            )

        try:
            start = parse_timestamp(data["start"]) if data.get("start") else None
            end = parse_timestamp(data["end"]) if data.get("end") else None
        except ValueError as e:
            raise MalformedResponseError(f"Invalid usage export window: {e}", payload=data, partition=partition) from e
        if default_window is not None:
            start = start or default_window[0]
            end = end or default_window[1]
        if start is None or end is None:
            raise MalformedResponseError("Usage export job has no window", payload=data, partition=partition)

        job_id = data.get("usage_export_job_id")
        extras = {key: value for key, value in data.items() if key not in _JOB_FIELDS}
        if "download_urls" in extras:
            extras["download_urls"] = [str(url) for url in require_list(data, "download_urls", partition=partition)]
        return AsyncJob(
            id=str(job_id) if job_id is not None else None,
            window_start=start,
            window_end=end,
            state=state,
            error_reason=data.get("error_reason") or None,
            payload=extras,
        )
