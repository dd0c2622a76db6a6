"""GitHub issues, synced per repository by ``updated_at`` cutoff.

Issues are listed newest-updated first, so an incremental run stops at the
first issue not updated since the stored cutoff.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from syncs.lib.errors import ConfigurationError
from syncs.lib.http import ApiClient
from syncs.lib.models import ChangeRecord, FetchMode, Page, format_timestamp
from syncs.lib.pagination import build_pagination_state
from syncs.lib.selector import StreamKind
from syncs.sources.base import HttpSource, require_field, require_list, require_timestamp

logger = logging.getLogger(__name__)

__all__ = ["GithubIssuesSource"]


class GithubIssuesSource(HttpSource):
    """Issues of ``org/repo`` partitions.

    Options:
        org: Organization whose repositories are synced when no partitions are listed
        page_size: Issues per request (max 100)
        include_pull_requests: GitHub lists pull requests as issues; dropped by default
        pagination: Overrides for the page-number paging GitHub uses
    """

    name = "github_issues"
    kind = StreamKind.CUTOFF
    default_base_url = "https://api.github.com"
    descending = True

    def __init__(
        self,
        client: ApiClient,
        *,
        partitions: Optional[Iterable[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(client, partitions=partitions, options=options)
        self.include_pull_requests = bool(self.options.get("include_pull_requests", False))
        self.pagination = self.pagination_config(
            pagination_type="page",
            page_size=100,
            page_param="page",
            page_size_param="per_page",
        )

    def validate_partition(self, partition: str) -> None:
        owner, _, repo = partition.partition("/")
        if not owner or not repo or "/" in repo:
            raise ConfigurationError(
                f"GitHub partitions look like 'org/repo', got {partition!r}",
                field="partitions",
                value=partition,
            )

    def discover_partitions(self) -> List[str]:
        org = self.options.get("org")
        if not org:
            return super().discover_partitions()

        repo_paging = build_pagination_state(self.pagination, {"type": "all"})
        repos: List[str] = []
        cursor: Optional[str] = None
        while True:
            data = self.client.get_json(f"/orgs/{org}/repos", params=repo_paging.build_params(cursor))
            page = require_list(data, None)
            repos.extend(require_field(r, "full_name") for r in page if not r.get("archived"))
            cursor = repo_paging.next_cursor(cursor, page, data)
            if cursor is None:
                return repos

    def fetch_page(self, partition: str, cursor: Optional[str], mode: FetchMode) -> Page:
        params: Dict[str, Any] = {"state": "all", "sort": "updated", "direction": "desc"}
        if mode.since is not None:
            params["since"] = format_timestamp(mode.since)
        paging = build_pagination_state(self.pagination, params)

        data = self.client.get_json(
            f"/repos/{partition}/issues",
            params=paging.build_params(cursor),
            partition=partition,
        )
        issues = require_list(data, None, partition=partition)
        logger.debug("Fetched %d issues for %s %s", len(issues), partition, paging.describe(cursor))

        records = [
            self.to_record(issue, partition)
            for issue in issues
            if self.include_pull_requests or "pull_request" not in issue
        ]
        return Page(items=records, next_cursor=paging.next_cursor(cursor, issues, data))

    @staticmethod
    def to_record(issue: Dict[str, Any], partition: Optional[str] = None) -> ChangeRecord:
        issue_id = require_field(issue, "id", partition=partition)
        updated_at = require_field(issue, "updated_at", partition=partition)
        payload = {
            "id": issue_id,
            "number": issue.get("number"),
            "repository": partition,
            "title": issue.get("title"),
            "state": issue.get("state"),
            "author": (issue.get("user") or {}).get("login"),
            "assignees": [a.get("login") for a in issue.get("assignees") or []],
            "labels": [label.get("name") for label in issue.get("labels") or [] if isinstance(label, dict)],
            "created_at": issue.get("created_at"),
            "updated_at": updated_at,
            "closed_at": issue.get("closed_at"),
            "is_pull_request": "pull_request" in issue,
        }
        effective_time = require_timestamp(issue, "updated_at", partition=partition)
        return ChangeRecord.upsert(str(issue_id), payload, effective_time=effective_time)
