"""Google Calendar v3 variant.

## Endpoints

- Calendar list: GET /users/me/calendarList
- Events: GET /calendars/{calendarId}/events (incremental via syncToken)
- Event: POST/PATCH/DELETE /calendars/{calendarId}/events/{eventId}

## Incremental Sync

The first request pages through the sync window with `timeMin`/`timeMax`;
the last page carries `nextSyncToken`. Later requests send only
`syncToken`. Deleted events come back with `status: "cancelled"`. An expired
token answers 410 Gone and requires a full sync.

Reference: https://developers.google.com/calendar/api/guides/sync
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from calsync.database.models import CalendarProvider
from calsync.errors import ProviderError
from calsync.providers.base import (
    AuthorizedRequest,
    CalendarListEntry,
    EventDelta,
    ProviderVariant,
    SyncWindow,
)

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/calendar/v3"
MAX_RESULTS = 2500


def calendar_url(calendar_id: str) -> str:
    return f"{API_BASE}/calendars/{quote(calendar_id, safe='')}"


def events_url(calendar_id: str) -> str:
    return f"{calendar_url(calendar_id)}/events"


def event_url(calendar_id: str, event_id: str) -> str:
    return f"{events_url(calendar_id)}/{quote(event_id, safe='')}"


def parse_calendar_list(data: dict[str, Any]) -> list[CalendarListEntry]:
    return [
        CalendarListEntry(
            id=item["id"],
            name=item.get("summary") or item["id"],
            is_primary=bool(item.get("primary", False)),
            description=item.get("description"),
            access_role=item.get("accessRole"),
        )
        for item in data.get("items", [])
        if item.get("id")
    ]


def parse_calendar_name(data: dict[str, Any]) -> str | None:
    return data.get("summary")


def _sync_token_rejected(status_code: int, body: str) -> bool:
    if status_code == 410:
        return True
    return status_code == 400 and "syncToken" in body


async def fetch_delta(
    request: AuthorizedRequest,
    calendar_id: str,
    cursor: str | None,
    window: SyncWindow,
    user_timezone: str,
) -> EventDelta:
    """Page through the events feed of one calendar."""
    base_params = {
        "maxResults": str(MAX_RESULTS),
        "singleEvents": "true",
        "showDeleted": "true",
    }
    if cursor:
        base_params["syncToken"] = cursor
    else:
        base_params.update(
            timeMin=window.start_iso,
            timeMax=window.end_iso,
            orderBy="startTime",
        )

    delta = EventDelta()
    page_token: str | None = None

    while True:
        params = dict(base_params)
        if page_token:
            params["pageToken"] = page_token

        response = await request("GET", events_url(calendar_id), params=params)

        if cursor and _sync_token_rejected(response.status_code, response.text):
            logger.warning(
                f"Sync token rejected for calendar {calendar_id} "
                f"({response.status_code}), performing full sync"
            )
            return await fetch_delta(request, calendar_id, None, window, user_timezone)

        if response.is_error:
            raise ProviderError(
                f"Failed to fetch events: {response.status_code}",
                provider=CalendarProvider.GOOGLE.value,
                status_code=response.status_code,
                response_body=response.text,
            )

        data = response.json()
        for item in data.get("items", []):
            item_id = item.get("id")
            if item.get("status") == "cancelled" and item_id:
                delta.deleted_ids.append(item_id)
            else:
                delta.events.append(item)

        if data.get("nextSyncToken"):
            delta.next_cursor = data["nextSyncToken"]

        page_token = data.get("nextPageToken")
        if not page_token:
            break

    if delta.events or delta.deleted_ids:
        logger.info(
            f"Fetched {len(delta.events)} events ({len(delta.deleted_ids)} deletions) "
            f"for Google calendar {calendar_id}"
        )
    return delta


VARIANT = ProviderVariant(
    provider=CalendarProvider.GOOGLE.value,
    calendar_list_url=f"{API_BASE}/users/me/calendarList",
    calendar_url=calendar_url,
    events_url=events_url,
    event_url=event_url,
    parse_calendar_list=parse_calendar_list,
    parse_calendar_name=parse_calendar_name,
    fetch_delta=fetch_delta,
)
