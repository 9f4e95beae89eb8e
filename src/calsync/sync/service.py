"""User-facing calendar sync operations.

Backs the `/api/calendar-sync` routes: connection status, opting provider
calendars into sync, removing pairings, disconnecting and forcing a sync.
The heavy lifting is delegated to `SyncOrchestrator`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.auth.tokens import TokenManager
from calsync.config import Settings, get_settings
from calsync.database.models import (
    CalendarConnection,
    CalendarProvider,
    ConnectionStatus,
    SyncedCalendar,
)
from calsync.errors import NotConnectedError
from calsync.events.store import DEFAULT_CALENDAR_COLOR, CalendarStore
from calsync.providers.adapter import ProviderAdapter
from calsync.providers.base import CalendarListEntry
from calsync.sync.correlation import CorrelationStore
from calsync.sync.orchestrator import ConnectionSyncResult, SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SyncedCalendarInfo:
    """A pairing as shown to the user."""

    id: uuid.UUID
    local_calendar_id: uuid.UUID
    local_name: str | None
    external_id: str
    external_name: str | None
    provider: str
    last_sync_at: datetime | None
    bidirectional_sync: bool


@dataclass
class ProviderStatus:
    """Connection state for one provider."""

    provider: str
    is_connected: bool
    calendars: list[CalendarListEntry] = field(default_factory=list)
    synced_calendars: list[SyncedCalendarInfo] = field(default_factory=list)
    last_sync_at: datetime | None = None


@dataclass
class CalendarSyncRequest:
    """One provider calendar the user wants to sync."""

    external_id: str
    local_name: str | None = None
    bidirectional_sync: bool | None = None
    trigger_automation_rules: bool = False
    selected_rule_ids: list[Any] = field(default_factory=list)


class CalendarSyncService:
    """Service for managing calendar sync for a user.

    Example:
        ```python
        service = CalendarSyncService(db, orchestrator, http_client)

        statuses = await service.get_status(user.id)
        await service.sync_calendars(
            user.id, "google", [CalendarSyncRequest("primary", "Work")]
        )
        ```
    """

    def __init__(
        self,
        db: AsyncSession,
        orchestrator: SyncOrchestrator,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.tokens = TokenManager(db, self.settings, http_client)
        self.adapter = ProviderAdapter(self.tokens, http_client, self.settings)
        self.calendars = CalendarStore(db)
        self.correlations = CorrelationStore(db)

    async def _active_connection(
        self, user_id: uuid.UUID, provider: str
    ) -> CalendarConnection | None:
        result = await self.db.execute(
            select(CalendarConnection).where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.provider == provider,
                CalendarConnection.status == ConnectionStatus.ACTIVE.value,
            )
        )
        return result.scalar_one_or_none()

    async def _pairings(self, connection_id: uuid.UUID) -> list[SyncedCalendar]:
        result = await self.db.execute(
            select(SyncedCalendar)
            .where(SyncedCalendar.connection_id == connection_id)
            .order_by(SyncedCalendar.created_at)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(self, user_id: uuid.UUID) -> list[ProviderStatus]:
        """Connection state, provider calendars and pairings for every provider."""
        statuses = []
        for provider in CalendarProvider:
            connection = await self._active_connection(user_id, provider.value)
            if connection is None:
                statuses.append(ProviderStatus(provider.value, is_connected=False))
                continue

            calendars = await self.adapter.fetch_calendar_list(connection)
            synced = []
            for pairing in await self._pairings(connection.id):
                local = await self.calendars.get(pairing.local_calendar_id)
                synced.append(
                    SyncedCalendarInfo(
                        id=pairing.id,
                        local_calendar_id=pairing.local_calendar_id,
                        local_name=local.name if local else None,
                        external_id=pairing.external_calendar_id,
                        external_name=pairing.external_calendar_name,
                        provider=connection.provider,
                        last_sync_at=pairing.last_sync_at,
                        bidirectional_sync=pairing.bidirectional_sync,
                    )
                )
            statuses.append(
                ProviderStatus(
                    provider.value,
                    is_connected=True,
                    calendars=calendars,
                    synced_calendars=synced,
                    last_sync_at=connection.last_sync_at,
                )
            )
        return statuses

    # -------------------------------------------------------------------------
    # Pairings
    # -------------------------------------------------------------------------

    async def sync_calendars(
        self,
        user_id: uuid.UUID,
        provider: str,
        requests: Sequence[CalendarSyncRequest],
    ) -> ConnectionSyncResult:
        """Opt provider calendars into sync, then run an initial sync.

        New calendars get a local calendar and a pairing; existing pairings
        get their local name and bidirectional flag updated.

        Raises:
            NotConnectedError: If the user has no active connection to `provider`
        """
        connection = await self._active_connection(user_id, provider)
        if connection is None:
            raise NotConnectedError(user_id, provider)

        existing = {p.external_calendar_id: p for p in await self._pairings(connection.id)}

        for request in requests:
            pairing = existing.get(request.external_id)
            if pairing is not None:
                if request.bidirectional_sync is not None:
                    pairing.bidirectional_sync = request.bidirectional_sync
                if request.local_name:
                    local = await self.calendars.get(pairing.local_calendar_id)
                    if local is not None and local.name != request.local_name:
                        local.name = request.local_name
                continue

            external_name = await self.adapter.fetch_calendar_name(
                connection, request.external_id
            )
            local = await self.calendars.create(
                owner_id=user_id,
                name=request.local_name or external_name,
                description=f"Synced from {provider}",
                color=DEFAULT_CALENDAR_COLOR,
            )
            pairing = SyncedCalendar(
                connection_id=connection.id,
                local_calendar_id=local.id,
                external_calendar_id=request.external_id,
                external_calendar_name=external_name,
                bidirectional_sync=(
                    True
                    if request.bidirectional_sync is None
                    else request.bidirectional_sync
                ),
            )
            self.db.add(pairing)
            existing[request.external_id] = pairing
            logger.info(
                f"Pairing {provider} calendar {request.external_id} with "
                f"local calendar {local.id}"
            )

        await self.db.commit()

        selected_rule_ids = [rid for r in requests for rid in r.selected_rule_ids]
        return await self.orchestrator.run_sync(
            connection,
            trigger_automation=any(r.trigger_automation_rules for r in requests),
            selected_rule_ids=selected_rule_ids or None,
        )

    async def _delete_pairing(self, pairing: SyncedCalendar) -> None:
        removed = await self.correlations.delete_for_pairing(pairing.id)
        local_calendar_id = pairing.local_calendar_id
        await self.db.delete(pairing)
        await self.db.flush()
        await self.calendars.delete(local_calendar_id)
        logger.info(
            f"Removed pairing {pairing.id} ({removed} correlations, "
            f"local calendar {local_calendar_id})"
        )

    async def remove_pairing(self, user_id: uuid.UUID, pairing_id: uuid.UUID) -> bool:
        """Remove one pairing with its local calendar. False when not found."""
        result = await self.db.execute(
            select(SyncedCalendar)
            .join(
                CalendarConnection,
                SyncedCalendar.connection_id == CalendarConnection.id,
            )
            .where(
                SyncedCalendar.id == pairing_id,
                CalendarConnection.user_id == user_id,
            )
        )
        pairing = result.scalar_one_or_none()
        if pairing is None:
            return False

        await self._delete_pairing(pairing)
        await self.db.commit()
        return True

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def disconnect(self, user_id: uuid.UUID, provider: str | None = None) -> int:
        """Disconnect one provider, or all of them when `provider` is None.

        Pairings, their local calendars and correlations are deleted; the
        connection is kept as INACTIVE with its tokens cleared.

        Returns:
            Number of connections disconnected
        """
        query = select(CalendarConnection).where(CalendarConnection.user_id == user_id)
        if provider is not None:
            query = query.where(CalendarConnection.provider == provider)
        connections = list((await self.db.execute(query)).scalars().all())

        for connection in connections:
            for pairing in await self._pairings(connection.id):
                await self._delete_pairing(pairing)
            connection.status = ConnectionStatus.INACTIVE.value
            self.tokens.clear_tokens(connection)
            connection.last_sync_at = None
            logger.info(f"Disconnected {connection.provider} for user {user_id}")

        await self.db.commit()
        return len(connections)

    async def force_sync(self, user_id: uuid.UUID) -> list[ConnectionSyncResult]:
        """Sync every active connection of a user now.

        Raises:
            NotConnectedError: If the user has no active connection
        """
        result = await self.db.execute(
            select(CalendarConnection).where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.status == ConnectionStatus.ACTIVE.value,
            )
        )
        connections = list(result.scalars().all())
        if not connections:
            raise NotConnectedError(user_id)

        return [await self.orchestrator.run_sync(c) for c in connections]
