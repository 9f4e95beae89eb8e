"""Tests for the user-facing calendar sync service."""

import uuid

import pytest
from sqlalchemy import select

from calsync.database.models import (
    Calendar,
    CalendarConnection,
    Event,
    EventCorrelation,
    SyncedCalendar,
)
from calsync.errors import NotConnectedError
from calsync.sync.correlation import CorrelationStore
from calsync.sync.service import CalendarSyncRequest, CalendarSyncService

from test_orchestrator import standup


@pytest.fixture
def service(db, orchestrator, http_client, settings) -> CalendarSyncService:
    return CalendarSyncService(db, orchestrator, http_client, settings)


async def count(session_factory, model) -> int:
    async with session_factory() as db:
        return len((await db.execute(select(model))).scalars().all())


class TestStatus:
    async def test_connected_and_disconnected_providers(self, service, user, connection, pairing):
        """Test each provider reports its connection state."""
        google, microsoft = await service.get_status(user.id)

        assert google.provider == "google"
        assert google.is_connected
        assert [c.id for c in google.calendars] == ["primary", "work"]
        (synced,) = google.synced_calendars
        assert synced.id == pairing.id
        assert synced.local_name == "Work"
        assert synced.external_name == "Personal"
        assert synced.last_sync_at is None

        assert microsoft.provider == "microsoft"
        assert not microsoft.is_connected
        assert microsoft.calendars == []


class TestSyncCalendars:
    """Tests for opting provider calendars into sync."""

    async def test_creates_calendar_and_pairing(self, service, google, user, connection, session_factory):
        """Test a new selection gets a local calendar, a pairing and a first sync."""
        google.add_event(standup())

        result = await service.sync_calendars(
            user.id, "google", [CalendarSyncRequest(external_id="work")]
        )

        assert result.success
        assert result.pairings[0].local_created == 1

        async with session_factory() as db:
            (pairing,) = (await db.execute(select(SyncedCalendar))).scalars().all()
            assert pairing.external_calendar_id == "work"
            assert pairing.external_calendar_name == "Work"
            assert pairing.bidirectional_sync is True
            assert pairing.sync_token is not None

            calendar = await db.get(Calendar, pairing.local_calendar_id)
            assert calendar.name == "Work"
            assert calendar.description == "Synced from google"
            assert calendar.owner_id == user.id

    async def test_local_name_override(self, service, user, connection, session_factory):
        await service.sync_calendars(
            user.id,
            "google",
            [CalendarSyncRequest(external_id="primary", local_name="Home", bidirectional_sync=False)],
        )

        async with session_factory() as db:
            (pairing,) = (await db.execute(select(SyncedCalendar))).scalars().all()
            assert pairing.external_calendar_name == "Personal"
            assert pairing.bidirectional_sync is False
            calendar = await db.get(Calendar, pairing.local_calendar_id)
            assert calendar.name == "Home"

    async def test_existing_pairing_is_updated(self, service, user, connection, pairing, session_factory):
        """Test re-selecting a calendar updates it instead of pairing it twice."""
        await service.sync_calendars(
            user.id,
            "google",
            [
                CalendarSyncRequest(
                    external_id="primary", local_name="Renamed", bidirectional_sync=False
                )
            ],
        )

        assert await count(session_factory, SyncedCalendar) == 1
        async with session_factory() as db:
            stored = await db.get(SyncedCalendar, pairing.id)
            assert stored.bidirectional_sync is False
            calendar = await db.get(Calendar, pairing.local_calendar_id)
            assert calendar.name == "Renamed"

    async def test_requires_connection(self, service, user, connection):
        with pytest.raises(NotConnectedError):
            await service.sync_calendars(
                user.id, "microsoft", [CalendarSyncRequest(external_id="AAA")]
            )


class TestRemoval:
    """Tests for removing pairings and disconnecting."""

    @pytest.fixture
    async def mirrored(self, db, pairing, add_local_event):
        event = await add_local_event()
        await CorrelationStore(db).create(pairing.id, event.id, "ext1", None, None)
        await db.commit()
        return event

    async def test_remove_pairing(self, service, user, pairing, mirrored, session_factory):
        """Test a pairing is removed with its calendar, events and correlations."""
        assert await service.remove_pairing(user.id, pairing.id) is True

        assert await count(session_factory, SyncedCalendar) == 0
        assert await count(session_factory, EventCorrelation) == 0
        assert await count(session_factory, Event) == 0
        assert await count(session_factory, Calendar) == 0

    async def test_remove_unknown_pairing(self, service, user, pairing):
        assert await service.remove_pairing(user.id, uuid.uuid4()) is False

    async def test_remove_other_users_pairing(self, service, pairing):
        assert await service.remove_pairing(uuid.uuid4(), pairing.id) is False

    async def test_disconnect(self, service, user, connection, pairing, mirrored, session_factory):
        """Test disconnecting clears tokens and removes synced data."""
        assert await service.disconnect(user.id, "google") == 1

        async with session_factory() as db:
            stored = await db.get(CalendarConnection, connection.id)
            assert stored.status == "inactive"
            assert stored.access_token is None
            assert stored.refresh_token is None
            assert stored.token_expires_at is None
            assert stored.last_sync_at is None
        assert await count(session_factory, SyncedCalendar) == 0
        assert await count(session_factory, EventCorrelation) == 0

    async def test_disconnect_other_provider_is_a_no_op(self, service, user, connection):
        assert await service.disconnect(user.id, "microsoft") == 0


class TestForceSync:
    async def test_without_connection(self, service, user):
        with pytest.raises(NotConnectedError):
            await service.force_sync(user.id)

    async def test_syncs_every_connection(self, service, google, user, connection, pairing):
        google.add_event(standup())

        (result,) = await service.force_sync(user.id)

        assert result.connection_id == connection.id
        assert result.pairings[0].local_created == 1
