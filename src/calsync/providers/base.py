"""Shared types for provider adapters.

A provider is described by a `ProviderVariant`: its endpoints plus the
functions that parse its responses and walk its delta protocol. The closed
set of variants lives in `calsync.providers.adapter.VARIANTS`; the adapter
selects one per connection and runs the shared authenticated-request logic
around it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import httpx


class PushOperation(str, Enum):
    """Kind of change pushed to the provider."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class CalendarListEntry:
    """A calendar the connected account can see on the provider."""

    id: str
    name: str
    is_primary: bool = False
    description: str | None = None
    access_role: str | None = None


@dataclass
class EventDelta:
    """Changes on one external calendar since a cursor.

    `next_cursor` is opaque and is handed back on the next fetch.
    """

    events: list[dict[str, Any]] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass
class PushResult:
    """Outcome of a confirmed remote mutation."""

    external_id: str
    last_modified: datetime


@dataclass(frozen=True)
class SyncWindow:
    """Time range fetched on a full (cursor-less) sync."""

    start: datetime
    end: datetime

    @staticmethod
    def _format(value: datetime) -> str:
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    @property
    def start_iso(self) -> str:
        return self._format(self.start)

    @property
    def end_iso(self) -> str:
        return self._format(self.end)


class AuthorizedRequest(Protocol):
    """An HTTP call already bound to a connection's credentials."""

    def __call__(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Awaitable[httpx.Response]: ...


DeltaFetcher = Callable[
    [AuthorizedRequest, str, "str | None", SyncWindow, str],
    Awaitable[EventDelta],
]
DetailsFetcher = Callable[
    [AuthorizedRequest, str, str, str],
    Awaitable["dict[str, Any] | None"],
]


@dataclass(frozen=True)
class ProviderVariant:
    """Endpoints and protocol functions of one calendar provider."""

    provider: str
    calendar_list_url: str
    calendar_url: Callable[[str], str]
    events_url: Callable[[str], str]
    event_url: Callable[[str, str], str]
    parse_calendar_list: Callable[[dict[str, Any]], list[CalendarListEntry]]
    parse_calendar_name: Callable[[dict[str, Any]], "str | None"]
    fetch_delta: DeltaFetcher
    fetch_details: DetailsFetcher | None = None
    # Provider limit on the full-sync window, in days
    max_window_days: int | None = None
