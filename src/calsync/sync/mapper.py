"""Translation between provider wire events and local events.

All functions in this module are pure: no I/O, no database access.

## Local Event Shape

Local events carry wall-clock dates and "HH:MM" times expressed in the
owning user's timezone. The end date of an all-day event is inclusive.

## Provider Shapes

Google Calendar v3:
- `summary`, `description`, `location` (string)
- `start` / `end`: `{"dateTime", "timeZone"}` or `{"date"}` (end exclusive)
- `recurringEventId` and `originalStartTime` on series instances
- `updated`: RFC 3339 last-modified

Microsoft Graph v1.0:
- `subject`, `body.content`, `bodyPreview`, `location.displayName`
- `isAllDay`, `start` / `end`: `{"dateTime", "timeZone"}` (end exclusive)
- `seriesMasterId` and `originalStart` on series instances
- `lastModifiedDateTime`
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from calsync.database.models import CalendarProvider, Event
from calsync.sync.timezones import (
    UTC,
    resolve_timezone,
    safe_user_timezone,
    to_windows_timezone,
)

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"
DEFAULT_EVENT_DURATION = timedelta(minutes=60)

# Extended property names used to tag pushed series instances
SERIES_ID_PROPERTY = "calsyncSeriesId"
ORIGINAL_START_PROPERTY = "calsyncOriginalStart"
_MICROSOFT_PROPERTY_NAMESPACE = "{66f5a359-4659-4830-9070-00047ec6ac6e}"

_FRACTION = re.compile(r"\.(\d+)")
_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")


@dataclass
class LocalEventData:
    """Canonical event fields produced from a provider event."""

    title: str
    description: str = ""
    location: str = ""
    is_all_day: bool = False
    start_date: date | None = None
    start_time: str | None = None
    end_date: date | None = None
    end_time: str | None = None
    recurrence_id: str | None = None
    original_date: str | None = None

    def as_fields(self) -> dict[str, Any]:
        """Fields to write onto a local event row."""
        return {
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "is_all_day": self.is_all_day,
            "start_date": self.start_date,
            "start_time": self.start_time,
            "end_date": self.end_date,
            "end_time": self.end_time,
            "recurrence_id": self.recurrence_id,
            "original_date": self.original_date,
        }


# =============================================================================
# Parsing helpers
# =============================================================================


def parse_datetime(raw: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp as sent by either provider.

    Accepts a trailing "Z" and fractional seconds of any precision (Graph
    sends seven digits). Returns a naive datetime when no offset is present.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    value = raw.strip()
    if value[-1] in "zZ":
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_date(raw: Any) -> date | None:
    """Parse the calendar date at the start of an ISO date or timestamp."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or len(raw) < 10:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_time_of_day(raw: str | None) -> time | None:
    """Parse a local "HH:MM" time. Returns None when malformed."""
    if not raw:
        return None
    match = _TIME_OF_DAY.match(raw.strip())
    if not match:
        return None
    return time(int(match.group(1)), int(match.group(2)))


def normalize_all_day_end(raw: Any) -> date | None:
    """Turn a provider's exclusive all-day end date into an inclusive one."""
    parsed = parse_date(raw)
    if parsed is None:
        return None
    return parsed - timedelta(days=1)


def convert_to_user_datetime(
    raw: Any,
    user_timezone: str,
    source_timezones: Iterable[str | None],
) -> tuple[date, str] | None:
    """Convert a provider timestamp into a (date, "HH:MM") pair in the user's zone.

    An explicit offset on the timestamp wins. Otherwise the timestamp is read
    in the first resolvable zone of `source_timezones`, or UTC.
    """
    parsed = parse_datetime(raw)
    if parsed is None:
        return None

    if parsed.tzinfo is None:
        source_zone = next(
            (tz for tz in map(resolve_timezone, source_timezones) if tz), UTC
        )
        parsed = parsed.replace(tzinfo=ZoneInfo(source_zone))

    local = parsed.astimezone(ZoneInfo(safe_user_timezone(user_timezone)))
    return local.date(), local.strftime("%H:%M")


def get_external_last_modified(external_event: dict[str, Any]) -> datetime:
    """Provider-reported last-modified instant of an event, or now when absent."""
    raw = external_event.get("lastModifiedDateTime") or external_event.get("updated")
    parsed = parse_datetime(raw)
    if parsed is None:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_syncable_local_event(event: Event) -> bool:
    """Recurrence templates stay local; instances and single events sync."""
    return not event.is_recurrence_template


def needs_event_details(provider: str, external_event: dict[str, Any]) -> bool:
    """Whether a Microsoft delta item lacks its subject or full body text."""
    if provider != CalendarProvider.MICROSOFT.value or not external_event:
        return False

    subject = external_event.get("subject")
    if not (subject.strip() if isinstance(subject, str) else subject):
        return True

    body = external_event.get("body") or {}
    content = body.get("content") if isinstance(body, dict) else None
    content = content.strip() if isinstance(content, str) else ""
    preview = external_event.get("bodyPreview")
    preview = preview.strip() if isinstance(preview, str) else ""

    if preview and not content:
        return True
    # Graph truncates bodyPreview at 255 characters
    if preview and content and len(preview) >= 200:
        return len(content) <= len(preview)
    return False


# =============================================================================
# Provider -> local
# =============================================================================


def to_local_event(
    provider: str,
    external_event: dict[str, Any],
    user_timezone: str,
) -> LocalEventData:
    """Translate a provider event into local event fields."""
    user_timezone = safe_user_timezone(user_timezone)
    if provider == CalendarProvider.MICROSOFT.value:
        return _microsoft_to_local(external_event, user_timezone)
    if provider == CalendarProvider.GOOGLE.value:
        return _google_to_local(external_event, user_timezone)
    raise ValueError(f"Unsupported provider: {provider}")


def _microsoft_to_local(event: dict[str, Any], user_timezone: str) -> LocalEventData:
    body = event.get("body") or {}
    location = event.get("location") or {}
    data = LocalEventData(
        title=event.get("subject") or UNTITLED_EVENT,
        description=body.get("content") or event.get("bodyPreview") or "",
        location=location.get("displayName") or "",
        is_all_day=bool(event.get("isAllDay")),
    )

    start = event.get("start") or {}
    end = event.get("end") or {}
    original_start_zone = event.get("originalStartTimeZone")
    original_end_zone = event.get("originalEndTimeZone")

    if start:
        if data.is_all_day:
            data.start_date = parse_date(start.get("dateTime") or start.get("date"))
        else:
            converted = convert_to_user_datetime(
                start.get("dateTime"),
                user_timezone,
                [start.get("timeZone"), original_start_zone, original_end_zone],
            )
            if converted:
                data.start_date, data.start_time = converted

    if end:
        if data.is_all_day:
            data.end_date = normalize_all_day_end(end.get("dateTime") or end.get("date"))
        else:
            converted = convert_to_user_datetime(
                end.get("dateTime"),
                user_timezone,
                [end.get("timeZone"), original_end_zone, original_start_zone],
            )
            if converted:
                data.end_date, data.end_time = converted

    if event.get("seriesMasterId"):
        data.recurrence_id = event["seriesMasterId"]
        original = parse_date(event.get("originalStart"))
        data.original_date = original.isoformat() if original else None

    return data


def _google_to_local(event: dict[str, Any], user_timezone: str) -> LocalEventData:
    location = event.get("location")
    data = LocalEventData(
        title=event.get("summary") or UNTITLED_EVENT,
        description=event.get("description") or "",
        location=location if isinstance(location, str) else "",
    )

    start = event.get("start") or {}
    end = event.get("end") or {}

    if start.get("date"):
        data.is_all_day = True
        data.start_date = parse_date(start["date"])
    elif start.get("dateTime"):
        converted = convert_to_user_datetime(
            start["dateTime"], user_timezone, [start.get("timeZone")]
        )
        if converted:
            data.start_date, data.start_time = converted

    if end.get("date"):
        data.end_date = normalize_all_day_end(end["date"])
    elif end.get("dateTime"):
        converted = convert_to_user_datetime(
            end["dateTime"], user_timezone, [end.get("timeZone")]
        )
        if converted:
            data.end_date, data.end_time = converted

    if event.get("recurringEventId"):
        data.recurrence_id = event["recurringEventId"]
        original_start = event.get("originalStartTime") or {}
        original = parse_date(
            original_start.get("dateTime") or original_start.get("date")
        )
        data.original_date = original.isoformat() if original else None

    return data


# =============================================================================
# Local -> provider
# =============================================================================


@dataclass
class _EventRange:
    start: datetime
    end: datetime
    is_all_day: bool


def _event_range(event: Event, user_timezone: str) -> _EventRange | None:
    start_date = parse_date(event.start_date)
    if start_date is None:
        return None

    if event.is_all_day:
        end_date = parse_date(event.end_date) or start_date
        return _EventRange(
            start=datetime.combine(start_date, time()),
            end=datetime.combine(end_date + timedelta(days=1), time()),
            is_all_day=True,
        )

    zone = ZoneInfo(user_timezone)
    start_time = time()
    if event.start_time:
        start_time = parse_time_of_day(event.start_time)
        if start_time is None:
            return None
    start = datetime.combine(start_date, start_time, tzinfo=zone)

    if event.end_time:
        end_time = parse_time_of_day(event.end_time)
        if end_time is None:
            return None
        end_date = parse_date(event.end_date) or start_date
        end = datetime.combine(end_date, end_time, tzinfo=zone)
    else:
        end = start + DEFAULT_EVENT_DURATION

    return _EventRange(start=start, end=end, is_all_day=False)


def _series_tags(event: Event) -> dict[str, str] | None:
    series_id = event.recurrence_id or (
        str(event.parent_event_id) if event.parent_event_id else None
    )
    if not series_id:
        return None
    tags = {SERIES_ID_PROPERTY: series_id}
    if event.original_date:
        tags[ORIGINAL_START_PROPERTY] = str(event.original_date)
    return tags


def to_external_payload(
    provider: str,
    event: Event,
    user_timezone: str,
) -> dict[str, Any] | None:
    """Build the provider request body for a local event.

    Returns None when the event's dates cannot be expressed on the provider
    side (missing start date, malformed start or end time).
    """
    user_timezone = safe_user_timezone(user_timezone)
    event_range = _event_range(event, user_timezone)
    if event_range is None:
        logger.warning(f"Event {event.id} has invalid dates; not building payload")
        return None

    if provider == CalendarProvider.GOOGLE.value:
        return _google_payload(event, event_range, user_timezone)
    if provider == CalendarProvider.MICROSOFT.value:
        return _microsoft_payload(event, event_range, user_timezone)
    raise ValueError(f"Unsupported provider: {provider}")


def _google_payload(
    event: Event, event_range: _EventRange, user_timezone: str
) -> dict[str, Any]:
    if event_range.is_all_day:
        start = {"date": event_range.start.date().isoformat()}
        end = {"date": event_range.end.date().isoformat()}
    else:
        start = {"dateTime": event_range.start.isoformat(), "timeZone": user_timezone}
        end = {"dateTime": event_range.end.isoformat(), "timeZone": user_timezone}

    payload: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
        "start": start,
        "end": end,
    }

    tags = _series_tags(event)
    if tags:
        payload["extendedProperties"] = {"private": tags}
    return payload


def _microsoft_payload(
    event: Event, event_range: _EventRange, user_timezone: str
) -> dict[str, Any]:
    zone_name = to_windows_timezone(user_timezone) or user_timezone
    wall_clock = "%Y-%m-%dT%H:%M:%S"

    payload: dict[str, Any] = {
        "subject": event.title,
        "body": {"contentType": "HTML", "content": event.description or ""},
        "isAllDay": event_range.is_all_day,
        "start": {
            "dateTime": event_range.start.strftime(wall_clock),
            "timeZone": zone_name,
        },
        "end": {
            "dateTime": event_range.end.strftime(wall_clock),
            "timeZone": zone_name,
        },
    }
    if event.location:
        payload["location"] = {"displayName": event.location}

    tags = _series_tags(event)
    if tags:
        payload["singleValueExtendedProperties"] = [
            {"id": f"String {_MICROSOFT_PROPERTY_NAMESPACE} Name {name}", "value": value}
            for name, value in tags.items()
        ]
    return payload
