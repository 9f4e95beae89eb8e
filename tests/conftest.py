"""Pytest fixtures for calendar sync engine tests.

This module provides test fixtures that ensure:
1. No external API calls are made (provider HTTP is served by httpx.MockTransport)
2. Each test gets its own SQLite database file
3. Isolated test environment with controlled configuration
"""

import json
import os
from datetime import date, datetime, timedelta, timezone

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("MICROSOFT_CLIENT_ID", "test-ms-client-id")
os.environ.setdefault("MICROSOFT_CLIENT_SECRET", "test-ms-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

import httpx
from sqlalchemy.ext.asyncio import create_async_engine

from calsync.config import get_settings
from calsync.database.connection import create_session_factory
from calsync.database.models import (
    Base,
    Calendar,
    CalendarConnection,
    CalendarProvider,
    Event,
    SyncedCalendar,
    User,
    utcnow,
)
from calsync.sync.orchestrator import SyncOrchestrator


def google_timestamp(value: datetime | None = None) -> str:
    """Format an instant the way Google reports `updated`."""
    value = value or datetime.now(timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace(
        "+00:00", "Z"
    )


class FakeGoogleCalendar:
    """In-memory Google Calendar v3 API for one account.

    Serves the token endpoint and the events feed of any calendar id. Writes
    made through the API show up in the next incremental fetch, like the real
    service does.
    """

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.changes: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.expired_sync_tokens: set[str] = set()
        self.rejected_access_tokens: set[str] = set()
        self.failing_calendars: set[str] = set()
        self.write_status: int | None = None
        self.refresh_status: int = 200
        self.refresh_body: dict | None = None
        self._ids = 0
        self._tokens = 0

    # -- test helpers ---------------------------------------------------------

    def add_event(self, event: dict) -> dict:
        self.events[event["id"]] = event
        self.changes.append(event)
        return event

    def cancel_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)
        self.changes.append({"id": event_id, "status": "cancelled"})

    def requests_for(self, method: str, fragment: str = "/events") -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and fragment in r.url.path
        ]

    @property
    def feed_requests(self) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == "GET" and r.url.path.endswith("/events")
        ]

    # -- transport ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == "oauth2.googleapis.com":
            return self._token_response()

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_access_tokens:
            return httpx.Response(401, json={"error": {"code": 401}})

        path = request.url.path
        if path.endswith("/calendarList"):
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "primary", "summary": "Personal", "primary": True},
                        {"id": "work", "summary": "Work", "accessRole": "owner"},
                    ]
                },
            )

        parts = path.split("/")
        # ['', 'calendar', 'v3', 'calendars', <calendar>, 'events', <event>?]
        if len(parts) == 5:
            names = {"primary": "Personal", "work": "Work"}
            if parts[4] not in names:
                return httpx.Response(404, json={"error": {"code": 404}})
            return httpx.Response(200, json={"id": parts[4], "summary": names[parts[4]]})
        if len(parts) == 6:
            if request.method == "GET":
                return self._feed(request)
            if request.method == "POST":
                return self._write(None, request)
        if len(parts) == 7:
            event_id = parts[6]
            if request.method == "DELETE":
                return self._delete(event_id)
            if request.method == "PATCH":
                return self._write(event_id, request)
            if request.method == "GET" and event_id in self.events:
                return httpx.Response(200, json=self.events[event_id])
        return httpx.Response(404, json={"error": {"code": 404}})

    def _token_response(self) -> httpx.Response:
        if self.refresh_status != 200:
            return httpx.Response(
                self.refresh_status, json=self.refresh_body or {"error": "server_error"}
            )
        self._tokens += 1
        return httpx.Response(
            200,
            json=self.refresh_body
            or {"access_token": f"fresh-access-{self._tokens}", "expires_in": 3600},
        )

    def _next_sync_token(self) -> str:
        self._tokens += 1
        return f"sync-{self._tokens}"

    def _feed(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.split("/")[4] in self.failing_calendars:
            return httpx.Response(503, text="backend error")

        sync_token = request.url.params.get("syncToken")
        if sync_token in self.expired_sync_tokens:
            return httpx.Response(410, json={"error": {"code": 410, "message": "Gone"}})

        if sync_token:
            items = list(self.changes)
        else:
            items = list(self.events.values())
        self.changes.clear()
        return httpx.Response(
            200, json={"items": items, "nextSyncToken": self._next_sync_token()}
        )

    def _write(self, event_id: str | None, request: httpx.Request) -> httpx.Response:
        if self.write_status is not None:
            return httpx.Response(self.write_status, text="write rejected")
        body = json.loads(request.content)

        if event_id is None:
            self._ids += 1
            event_id = f"google-{self._ids}"
        elif event_id not in self.events:
            return httpx.Response(404, json={"error": {"code": 404}})

        event = {**self.events.get(event_id, {}), **body}
        event.update(id=event_id, status="confirmed", updated=google_timestamp())
        self.events[event_id] = event
        self.changes.append(event)
        return httpx.Response(200, json=event)

    def _delete(self, event_id: str) -> httpx.Response:
        if event_id not in self.events:
            return httpx.Response(410, json={"error": {"code": 410}})
        self.cancel_event(event_id)
        return httpx.Response(204)


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Settings with a look-back long enough to cover fixed test dates."""
    return get_settings().model_copy(update={"calendar_sync_lookback_days": 3650})


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'calsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# =============================================================================
# Provider Fixtures
# =============================================================================


@pytest.fixture
def google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
async def http_client(google: FakeGoogleCalendar):
    client = httpx.AsyncClient(transport=httpx.MockTransport(google.handler))
    yield client
    await client.aclose()


@pytest.fixture
async def orchestrator(session_factory, http_client, settings):
    orchestrator = SyncOrchestrator(session_factory, http_client, settings)
    yield orchestrator
    await orchestrator.drain()


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture
async def user(db) -> User:
    user = User(email="ada@example.com", name="Ada", timezone="UTC")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def local_calendar(db, user) -> Calendar:
    calendar = Calendar(owner_id=user.id, name="Work", color="#10b981")
    db.add(calendar)
    await db.commit()
    return calendar


@pytest.fixture
async def connection(db, user) -> CalendarConnection:
    connection = CalendarConnection(
        user_id=user.id,
        provider=CalendarProvider.GOOGLE.value,
        provider_user_id="google-user-1",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    connection.access_token = "access-1"
    connection.refresh_token = "refresh-1"
    db.add(connection)
    await db.commit()
    return connection


@pytest.fixture
async def pairing(db, connection, local_calendar) -> SyncedCalendar:
    pairing = SyncedCalendar(
        connection_id=connection.id,
        local_calendar_id=local_calendar.id,
        external_calendar_id="primary",
        external_calendar_name="Personal",
        bidirectional_sync=True,
    )
    db.add(pairing)
    await db.commit()
    return pairing


@pytest.fixture
def add_local_event(db, local_calendar, user):
    """Factory inserting a committed local event into the paired calendar."""

    async def _add(**fields) -> Event:
        now = fields.pop("updated_at", None) or utcnow()
        calendar_id = fields.pop("calendar_id", local_calendar.id)
        values = {
            "title": "Planning",
            "start_date": date(2024, 1, 11),
            "start_time": "10:00",
            "end_date": date(2024, 1, 11),
            "end_time": "11:00",
            "created_by_id": user.id,
            **fields,
        }
        event = Event(calendar_id=calendar_id, created_at=now, updated_at=now, **values)
        db.add(event)
        await db.commit()
        return event

    return _add
