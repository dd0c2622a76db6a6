"""Google Calendar events, synced per calendar through sync tokens.

A full listing ends with ``nextSyncToken``; passing it back as
``syncToken`` returns only the events changed since, with cancelled
events reported as ``status: cancelled``. Google answers 410 Gone once a
token is no longer valid, which the engine turns into one full resync.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from syncs.lib.http import ApiClient
from syncs.lib.models import ChangeRecord, FetchKind, FetchMode, Page, format_timestamp
from syncs.lib.pagination import build_pagination_state
from syncs.lib.selector import StreamKind
from syncs.sources.base import HttpSource, require_field, require_list, require_timestamp

logger = logging.getLogger(__name__)

__all__ = ["GoogleCalendarEventsSource"]


class GoogleCalendarEventsSource(HttpSource):
    """Events of one calendar per partition.

    Options:
        page_size: Events per request (max 2500)
        single_events: Expand recurring events into instances
        pagination: Overrides for the page token paging Calendar uses
    """

    name = "google_calendar_events"
    kind = StreamKind.CHANGE_TOKEN
    default_base_url = "https://www.googleapis.com/calendar/v3"

    def __init__(
        self,
        client: ApiClient,
        *,
        partitions: Optional[Iterable[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(client, partitions=partitions, options=options)
        self.single_events = bool(self.options.get("single_events", False))
        self.pagination = self.pagination_config(
            pagination_type="cursor",
            page_size=250,
            cursor_param="pageToken",
            cursor_path="nextPageToken",
            page_size_param_for_cursor="maxResults",
        )

    def discover_partitions(self) -> List[str]:
        paging = build_pagination_state(self.pagination)
        calendars: List[str] = []
        cursor: Optional[str] = None
        while True:
            data = self.client.get_json("/users/me/calendarList", params=paging.build_params(cursor))
            calendars.extend(require_field(c, "id") for c in require_list(data, "items"))
            cursor = paging.next_cursor(cursor, [], data)
            if cursor is None:
                return calendars

    def fetch_page(self, partition: str, cursor: Optional[str], mode: FetchMode) -> Page:
        params: Dict[str, Any] = {"showDeleted": "true"}
        if self.single_events:
            params["singleEvents"] = "true"
        token_bearing = mode.kind == FetchKind.DELTA
        if token_bearing:
            params["syncToken"] = mode.token
        elif mode.since is not None:
            # timeMin cannot be combined with syncToken
            params["timeMin"] = format_timestamp(mode.since)
        paging = build_pagination_state(self.pagination, params)

        data = self.client.get_json(
            f"/calendars/{quote(partition, safe='')}/events",
            params=paging.build_params(cursor),
            token_bearing=token_bearing,
            partition=partition,
        )
        events = require_list(data, "items", partition=partition)
        next_cursor = paging.next_cursor(cursor, events, data)
        logger.debug("Fetched %d events for %s %s", len(events), partition, paging.describe(cursor))

        return Page(
            items=[self.to_record(event, partition) for event in events],
            next_cursor=next_cursor,
            sync_token=(data or {}).get("nextSyncToken") if next_cursor is None else None,
        )

    @staticmethod
    def to_record(event: Dict[str, Any], partition: Optional[str] = None) -> ChangeRecord:
        event_id = str(require_field(event, "id", partition=partition))
        updated = require_timestamp(event, "updated", partition=partition) if event.get("updated") else None

        if event.get("status") == "cancelled":
            return ChangeRecord.delete(event_id, effective_time=updated)

        payload = {
            "id": event_id,
            "calendar_id": partition,
            "status": event.get("status"),
            "summary": event.get("summary"),
            "start": event.get("start"),
            "end": event.get("end"),
            "organizer": (event.get("organizer") or {}).get("email"),
            "attendees": [a.get("email") for a in event.get("attendees") or [] if isinstance(a, dict)],
            "recurring_event_id": event.get("recurringEventId"),
            "created": event.get("created"),
            "updated": event.get("updated"),
        }
        return ChangeRecord.upsert(event_id, payload, effective_time=updated)
