"""Microsoft Graph v1.0 variant.

## Endpoints

- Calendar list: GET /me/calendars
- Events: GET /me/calendars/{id}/calendarView/delta (startDateTime/endDateTime)
- Event: POST/PATCH/DELETE /me/calendars/{id}/events/{eventId}

## Delta Query

Pages are chained through `@odata.nextLink`; the final page carries
`@odata.deltaLink`, which is stored as the cursor and requested verbatim on
the next sync. Removed events come back as `{"id": ..., "@removed": {...}}`.

Stored delta links are cleaned before use: a `$top` parameter makes Graph
reject the link with ErrorInvalidUrlQuery, and links without `$select`
return truncated bodies, so such cursors are dropped in favour of a full
sync.

Reference: https://learn.microsoft.com/graph/delta-query-events
"""

from __future__ import annotations

import logging
import re
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
from calsync.sync.timezones import to_windows_timezone

logger = logging.getLogger(__name__)

API_BASE = "https://graph.microsoft.com/v1.0"
MAX_WINDOW_DAYS = 365
PAGE_SIZE = 1000

DELTA_SELECT_FIELDS = [
    "id",
    "subject",
    "body",
    "bodyPreview",
    "location",
    "isAllDay",
    "start",
    "end",
    "seriesMasterId",
    "originalStart",
    "originalStartTimeZone",
    "originalEndTimeZone",
    "lastModifiedDateTime",
]

DETAIL_SELECT_FIELDS = [
    "subject",
    "body",
    "bodyPreview",
    "location",
    "isAllDay",
    "start",
    "end",
    "organizer",
    "attendees",
    "sensitivity",
    "showAs",
]

_TOP_PARAM = re.compile(r"(\$top=|%24top=)", re.IGNORECASE)
_SELECT_PARAM = re.compile(r"(\$select=|%24select=)", re.IGNORECASE)
_STRIP_TOP = re.compile(r"([?&])(?:%24|\$)top=[^&]*&?", re.IGNORECASE)


def calendar_url(calendar_id: str) -> str:
    return f"{API_BASE}/me/calendars/{quote(calendar_id, safe='')}"


def events_url(calendar_id: str) -> str:
    return f"{calendar_url(calendar_id)}/events"


def event_url(calendar_id: str, event_id: str) -> str:
    return f"{events_url(calendar_id)}/{quote(event_id, safe='')}"


def delta_url(calendar_id: str) -> str:
    return f"{calendar_url(calendar_id)}/calendarView/delta"


def parse_calendar_list(data: dict[str, Any]) -> list[CalendarListEntry]:
    return [
        CalendarListEntry(
            id=item["id"],
            name=item.get("name") or item["id"],
            is_primary=bool(item.get("isDefaultCalendar", False)),
            description=item.get("description"),
        )
        for item in data.get("value", [])
        if item.get("id")
    ]


def parse_calendar_name(data: dict[str, Any]) -> str | None:
    return data.get("name")


def strip_top_param(link: str | None) -> str | None:
    """Remove `$top` from a Graph paging or delta link."""
    if not link:
        return None
    cleaned = _STRIP_TOP.sub(r"\1", link)
    return cleaned.rstrip("?&")


def usable_delta_link(cursor: str | None, calendar_id: str) -> str | None:
    """Return a stored delta link that is safe to replay, or None."""
    link = strip_top_param(cursor)
    if link and _TOP_PARAM.search(link):
        logger.warning("Delta link still contains $top; dropping it")
        return None
    if link and not _SELECT_PARAM.search(link):
        logger.warning(
            f"Delta link missing $select; dropping it to refresh event bodies "
            f"for calendar {calendar_id}"
        )
        return None
    return link


def prefer_header(user_timezone: str, *parts: str) -> str:
    zone = to_windows_timezone(user_timezone)
    values = [f'outlook.timezone="{zone}"'] if zone else []
    values.extend(parts)
    return ", ".join(values)


def _delta_link_rejected(status_code: int, body: str) -> bool:
    if status_code == 410:
        return True
    return (
        status_code == 400 and "ErrorInvalidUrlQuery" in body and "$top" in body
    )


async def fetch_delta(
    request: AuthorizedRequest,
    calendar_id: str,
    cursor: str | None,
    window: SyncWindow,
    user_timezone: str,
) -> EventDelta:
    """Follow the calendarView delta chain of one calendar."""
    delta_link = usable_delta_link(cursor, calendar_id)
    headers = {
        "Prefer": prefer_header(
            user_timezone,
            f"odata.maxpagesize={PAGE_SIZE}",
            'outlook.body-content-type="text"',
        )
    }

    delta = EventDelta()
    next_url: str | None = delta_link
    params: dict[str, str] | None = None
    if next_url is None:
        next_url = delta_url(calendar_id)
        params = {
            "startDateTime": window.start_iso,
            "endDateTime": window.end_iso,
            "$select": ",".join(DELTA_SELECT_FIELDS),
        }

    while next_url:
        response = await request("GET", next_url, params=params, headers=headers)
        params = None

        if delta_link and _delta_link_rejected(response.status_code, response.text):
            logger.warning(
                f"Delta link rejected for calendar {calendar_id} "
                f"({response.status_code}), performing full sync"
            )
            return await fetch_delta(request, calendar_id, None, window, user_timezone)

        if response.is_error:
            raise ProviderError(
                f"Failed to fetch events: {response.status_code}",
                provider=CalendarProvider.MICROSOFT.value,
                status_code=response.status_code,
                response_body=response.text,
            )

        data = response.json()
        for item in data.get("value", []):
            item_id = item.get("id")
            if "@removed" in item and item_id:
                delta.deleted_ids.append(item_id)
            else:
                delta.events.append(item)

        next_url = strip_top_param(data.get("@odata.nextLink"))
        if data.get("@odata.deltaLink"):
            delta.next_cursor = strip_top_param(data["@odata.deltaLink"])

    if delta.next_cursor is None:
        delta.next_cursor = delta_link

    if delta.events or delta.deleted_ids:
        logger.info(
            f"Fetched {len(delta.events)} events ({len(delta.deleted_ids)} deletions) "
            f"for Microsoft calendar {calendar_id}"
        )
    return delta


async def fetch_details(
    request: AuthorizedRequest,
    calendar_id: str,
    event_id: str,
    user_timezone: str,
) -> dict[str, Any] | None:
    """Fetch the full subject and body of one event."""
    response = await request(
        "GET",
        event_url(calendar_id, event_id),
        params={"$select": ",".join(DETAIL_SELECT_FIELDS)},
        headers={
            "Prefer": prefer_header(user_timezone, 'outlook.body-content-type="text"')
        },
    )
    if response.is_error:
        logger.warning(
            f"Failed to fetch event {event_id}: {response.status_code} - {response.text}"
        )
        return None
    return response.json()


VARIANT = ProviderVariant(
    provider=CalendarProvider.MICROSOFT.value,
    calendar_list_url=f"{API_BASE}/me/calendars",
    calendar_url=calendar_url,
    events_url=events_url,
    event_url=event_url,
    parse_calendar_list=parse_calendar_list,
    parse_calendar_name=parse_calendar_name,
    fetch_delta=fetch_delta,
    fetch_details=fetch_details,
    max_window_days=MAX_WINDOW_DAYS,
)
