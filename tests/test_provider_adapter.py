"""Tests for the provider adapter and its Google/Microsoft variants."""

import json
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

from calsync.auth.tokens import TokenManager
from calsync.database.models import CalendarConnection, Event
from calsync.errors import ProviderAuthError, ProviderError
from calsync.providers.adapter import ProviderAdapter, get_variant
from calsync.providers.base import PushOperation
from calsync.providers.microsoft import strip_top_param, usable_delta_link


class Recorder:
    """Routes requests to a handler and keeps them for inspection."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
async def make_adapter(db, settings):
    clients: list[httpx.AsyncClient] = []

    def _make(handler) -> tuple[ProviderAdapter, Recorder]:
        recorder = Recorder(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        clients.append(client)
        adapter = ProviderAdapter(TokenManager(db, settings, client), client, settings)
        return adapter, recorder

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def microsoft_connection(db, user) -> CalendarConnection:
    connection = CalendarConnection(
        user_id=user.id,
        provider="microsoft",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    connection.access_token = "ms-access"
    connection.refresh_token = "ms-refresh"
    db.add(connection)
    await db.commit()
    return connection


def local_event(**fields) -> Event:
    values = {
        "id": uuid.uuid4(),
        "calendar_id": uuid.uuid4(),
        "title": "Planning",
        "start_date": date(2024, 3, 5),
        "start_time": "10:00",
        "end_date": date(2024, 3, 5),
        "end_time": "11:00",
    }
    values.update(fields)
    return Event(**values)


class TestVariants:
    def test_known_variants(self):
        assert get_variant("google").max_window_days is None
        assert get_variant("microsoft").max_window_days == 365

    def test_unknown_variant(self):
        with pytest.raises(ValueError):
            get_variant("yahoo")


class TestSyncWindow:
    """Tests for the full-sync window."""

    async def test_google_window(self, make_adapter, settings):
        adapter, _ = make_adapter(lambda r: httpx.Response(200))
        window = adapter.sync_window("google")

        days = settings.calendar_sync_lookback_days + settings.calendar_sync_lookahead_days
        assert abs((window.end - window.start) - timedelta(days=days)) < timedelta(seconds=1)

    async def test_microsoft_window_is_capped(self, make_adapter):
        """Test Graph never gets a window longer than a year."""
        adapter, _ = make_adapter(lambda r: httpx.Response(200))
        window = adapter.sync_window("microsoft")

        assert window.end - window.start == timedelta(days=365)
        assert window.end > datetime.now(timezone.utc)

    async def test_local_window_is_not_capped(self, make_adapter, settings):
        """Test the push window keeps the configured look-back."""
        adapter, _ = make_adapter(lambda r: httpx.Response(200))
        window = adapter.local_window()

        earliest = datetime.now(timezone.utc) - timedelta(
            days=settings.calendar_sync_lookback_days
        )
        assert abs(window.start - earliest) < timedelta(seconds=1)
        assert window.start < adapter.sync_window("microsoft").start


class TestAuthenticatedRequest:
    """Tests for 401 handling."""

    async def test_refreshes_and_retries_once(self, make_adapter, connection):
        """Test a 401 triggers a refresh and a single retry."""

        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
            if request.headers["Authorization"] == "Bearer access-1":
                return httpx.Response(401)
            return httpx.Response(200, json={"items": []})

        adapter, recorder = make_adapter(handler)
        response = await adapter.authenticated_request(
            connection, "GET", "https://www.googleapis.com/calendar/v3/users/me/calendarList"
        )

        assert response.status_code == 200
        assert connection.access_token == "fresh"
        assert len(recorder.requests) == 3

    async def test_second_401_raises(self, make_adapter, connection):
        def handler(request):
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
            return httpx.Response(401)

        adapter, _ = make_adapter(handler)
        with pytest.raises(ProviderAuthError):
            await adapter.authenticated_request(connection, "GET", "https://example.test/")

    async def test_401_without_refresh_token_raises(self, make_adapter, connection):
        """Test no refresh is attempted when there is no refresh token."""
        connection.refresh_token = None
        adapter, recorder = make_adapter(lambda r: httpx.Response(401))

        with pytest.raises(ProviderAuthError):
            await adapter.authenticated_request(connection, "GET", "https://example.test/")

        assert len(recorder.requests) == 1


class TestCalendars:
    """Tests for calendar listing."""

    async def test_google_calendar_list(self, make_adapter, connection):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "primary", "summary": "Personal", "primary": True},
                        {"id": "team@group", "accessRole": "reader"},
                    ]
                },
            )

        adapter, _ = make_adapter(handler)
        calendars = await adapter.fetch_calendar_list(connection)

        assert [(c.id, c.name, c.is_primary) for c in calendars] == [
            ("primary", "Personal", True),
            ("team@group", "team@group", False),
        ]
        assert calendars[1].access_role == "reader"

    async def test_microsoft_calendar_list(self, make_adapter, microsoft_connection):
        def handler(request):
            assert request.url.path == "/v1.0/me/calendars"
            return httpx.Response(
                200, json={"value": [{"id": "AAA", "name": "Calendar", "isDefaultCalendar": True}]}
            )

        adapter, _ = make_adapter(handler)
        (calendar,) = await adapter.fetch_calendar_list(microsoft_connection)

        assert (calendar.id, calendar.name, calendar.is_primary) == ("AAA", "Calendar", True)

    async def test_calendar_list_failure_is_empty(self, make_adapter, connection):
        """Test any listing failure yields an empty list."""
        adapter, _ = make_adapter(lambda r: httpx.Response(500, text="boom"))

        assert await adapter.fetch_calendar_list(connection) == []

    async def test_calendar_name_fallback(self, make_adapter, connection):
        adapter, _ = make_adapter(lambda r: httpx.Response(404))

        assert await adapter.fetch_calendar_name(connection, "abc") == "External Calendar abc"


class TestGoogleDelta:
    """Tests for the Google incremental feed."""

    async def test_full_fetch_pages_through_window(self, make_adapter, connection):
        """Test paging, cancelled items and the final sync token."""

        def handler(request):
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(
                    200,
                    json={
                        "items": [{"id": "b", "status": "cancelled"}],
                        "nextSyncToken": "token-1",
                    },
                )
            return httpx.Response(
                200, json={"items": [{"id": "a", "summary": "A"}], "nextPageToken": "p2"}
            )

        adapter, recorder = make_adapter(handler)
        delta = await adapter.fetch_event_delta(connection, "primary")

        assert [e["id"] for e in delta.events] == ["a"]
        assert delta.deleted_ids == ["b"]
        assert delta.next_cursor == "token-1"
        first = recorder.requests[0].url.params
        assert "timeMin" in first and "timeMax" in first
        assert first["singleEvents"] == "true"
        assert "syncToken" not in first

    async def test_incremental_fetch_sends_only_token(self, make_adapter, connection):
        adapter, recorder = make_adapter(
            lambda r: httpx.Response(200, json={"items": [], "nextSyncToken": "token-2"})
        )

        delta = await adapter.fetch_event_delta(connection, "primary", "token-1")

        params = recorder.requests[0].url.params
        assert params["syncToken"] == "token-1"
        assert "timeMin" not in params
        assert delta.next_cursor == "token-2"

    @pytest.mark.parametrize(
        "status,body",
        [
            (410, {"error": {"code": 410, "message": "Sync token is no longer valid"}}),
            (400, {"error": {"code": 400, "message": "Invalid syncToken value"}}),
        ],
    )
    async def test_rejected_token_falls_back(self, make_adapter, connection, status, body):
        """Test an expired or malformed token triggers a full fetch."""

        def handler(request):
            if "syncToken" in request.url.params:
                return httpx.Response(status, json=body)
            return httpx.Response(200, json={"items": [{"id": "a"}], "nextSyncToken": "fresh"})

        adapter, recorder = make_adapter(handler)
        delta = await adapter.fetch_event_delta(connection, "primary", "old")

        assert delta.next_cursor == "fresh"
        assert [e["id"] for e in delta.events] == ["a"]
        assert "syncToken" not in recorder.requests[-1].url.params

    async def test_server_error_raises(self, make_adapter, connection):
        adapter, _ = make_adapter(lambda r: httpx.Response(503, text="unavailable"))

        with pytest.raises(ProviderError) as exc_info:
            await adapter.fetch_event_delta(connection, "primary", "token-1")

        assert exc_info.value.status_code == 503


class TestMicrosoftDelta:
    """Tests for the Graph calendarView delta."""

    async def test_follows_next_and_delta_links(self, make_adapter, microsoft_connection):
        """Test the chain is followed and $top is stripped from links."""
        base = "https://graph.microsoft.com/v1.0/me/calendars/AAA/calendarView/delta"

        def handler(request):
            if "skiptoken" in str(request.url):
                return httpx.Response(
                    200,
                    json={
                        "value": [{"id": "gone", "@removed": {"reason": "deleted"}}],
                        "@odata.deltaLink": f"{base}?$deltatoken=d1&$top=50&$select=id",
                    },
                )
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "m1", "subject": "Review"}],
                    "@odata.nextLink": f"{base}?$skiptoken=s1&$top=50",
                },
            )

        adapter, recorder = make_adapter(handler)
        delta = await adapter.fetch_event_delta(
            microsoft_connection, "AAA", None, "Europe/Berlin"
        )

        assert [e["id"] for e in delta.events] == ["m1"]
        assert delta.deleted_ids == ["gone"]
        assert delta.next_cursor == f"{base}?$deltatoken=d1&$select=id"

        first, second = recorder.requests
        assert "startDateTime" in first.url.params
        assert "subject" in first.url.params["$select"]
        assert "top=" not in str(second.url)
        assert 'outlook.timezone="W. Europe Standard Time"' in first.headers["Prefer"]
        assert "odata.maxpagesize=1000" in first.headers["Prefer"]

    async def test_stored_delta_link_is_replayed(self, make_adapter, microsoft_connection):
        link = "https://graph.microsoft.com/v1.0/me/calendars/AAA/calendarView/delta?$deltatoken=d1&$select=id"
        adapter, recorder = make_adapter(
            lambda r: httpx.Response(200, json={"value": [], "@odata.deltaLink": link})
        )

        delta = await adapter.fetch_event_delta(microsoft_connection, "AAA", link)

        assert "deltatoken=d1" in str(recorder.requests[0].url)
        assert "startDateTime" not in recorder.requests[0].url.params
        assert delta.next_cursor == link

    async def test_rejected_delta_link_falls_back(self, make_adapter, microsoft_connection):
        link = "https://graph.microsoft.com/v1.0/me/calendars/AAA/calendarView/delta?$deltatoken=d1&$select=id"

        def handler(request):
            if "deltatoken" in str(request.url):
                return httpx.Response(410, json={"error": {"code": "SyncStateNotFound"}})
            return httpx.Response(
                200, json={"value": [{"id": "m1"}], "@odata.deltaLink": link + "2"}
            )

        adapter, _ = make_adapter(handler)
        delta = await adapter.fetch_event_delta(microsoft_connection, "AAA", link)

        assert [e["id"] for e in delta.events] == ["m1"]
        assert delta.next_cursor == link + "2"

    async def test_details_are_fetched_with_select(self, make_adapter, microsoft_connection):
        def handler(request):
            assert request.url.path.endswith("/events/m1")
            return httpx.Response(200, json={"id": "m1", "subject": "Full"})

        adapter, recorder = make_adapter(handler)
        details = await adapter.fetch_event_details(microsoft_connection, "AAA", "m1")

        assert details == {"id": "m1", "subject": "Full"}
        assert "body" in recorder.requests[0].url.params["$select"]

    async def test_google_has_no_details_fetch(self, make_adapter, connection):
        adapter, recorder = make_adapter(lambda r: httpx.Response(200))

        assert await adapter.fetch_event_details(connection, "primary", "a") is None
        assert recorder.requests == []


class TestDeltaLinks:
    """Tests for cleaning stored Graph delta links."""

    def test_strip_top(self):
        assert strip_top_param("https://x/delta?$top=10&$deltatoken=a") == "https://x/delta?$deltatoken=a"
        assert strip_top_param("https://x/delta?$deltatoken=a&%24top=10") == "https://x/delta?$deltatoken=a"
        assert strip_top_param(None) is None

    def test_link_without_select_is_dropped(self):
        assert usable_delta_link("https://x/delta?$deltatoken=a", "AAA") is None

    def test_usable_link(self):
        link = "https://x/delta?$deltatoken=a&$select=id,subject"
        assert usable_delta_link(link + "&$top=5", "AAA") == link

    def test_no_cursor(self):
        assert usable_delta_link(None, "AAA") is None


class TestPushEvent:
    """Tests for create/update/delete on the provider."""

    async def test_create(self, make_adapter, connection):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"id": "new-1", "updated": "2024-03-01T10:00:00Z", **body}
            )

        adapter, recorder = make_adapter(handler)
        result = await adapter.push_event(
            connection, "primary", PushOperation.CREATE, local_event(), user_timezone="UTC"
        )

        assert result.external_id == "new-1"
        assert result.last_modified == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert recorder.requests[0].method == "POST"
        assert recorder.requests[0].url.path == "/calendar/v3/calendars/primary/events"

    async def test_update_uses_patch(self, make_adapter, microsoft_connection):
        def handler(request):
            return httpx.Response(
                200, json={"id": "m1", "lastModifiedDateTime": "2024-03-01T10:00:00Z"}
            )

        adapter, recorder = make_adapter(handler)
        result = await adapter.push_event(
            microsoft_connection,
            "AAA",
            PushOperation.UPDATE,
            local_event(),
            external_event_id="m1",
        )

        assert result.external_id == "m1"
        assert recorder.requests[0].method == "PATCH"
        assert recorder.requests[0].url.path == "/v1.0/me/calendars/AAA/events/m1"

    async def test_update_requires_external_id(self, make_adapter, connection):
        adapter, _ = make_adapter(lambda r: httpx.Response(200))

        with pytest.raises(ValueError):
            await adapter.push_event(connection, "primary", PushOperation.UPDATE, local_event())

    async def test_rejected_write_returns_none(self, make_adapter, connection):
        adapter, _ = make_adapter(lambda r: httpx.Response(400, text="bad request"))

        assert (
            await adapter.push_event(connection, "primary", PushOperation.CREATE, local_event())
            is None
        )

    async def test_invalid_dates_are_not_sent(self, make_adapter, connection):
        adapter, recorder = make_adapter(lambda r: httpx.Response(200))

        result = await adapter.push_event(
            connection, "primary", PushOperation.CREATE, local_event(start_time="99:99")
        )

        assert result is None
        assert recorder.requests == []

    @pytest.mark.parametrize("status", [204, 404, 410])
    async def test_delete_succeeds_when_gone(self, make_adapter, connection, status):
        """Test deleting an already-deleted event counts as success."""
        adapter, recorder = make_adapter(lambda r: httpx.Response(status))

        result = await adapter.push_event(
            connection, "primary", PushOperation.DELETE, external_event_id="e1"
        )

        assert result.external_id == "e1"
        assert recorder.requests[0].method == "DELETE"

    async def test_delete_failure_returns_none(self, make_adapter, connection):
        adapter, _ = make_adapter(lambda r: httpx.Response(500))

        assert (
            await adapter.push_event(
                connection, "primary", PushOperation.DELETE, external_event_id="e1"
            )
            is None
        )
