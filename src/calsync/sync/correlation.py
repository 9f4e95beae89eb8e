"""Correlation store.

Persists which local event mirrors which external event within a pairing.
A row is written only after the mirrored mutation succeeded, so the
presence of a row means both sides hold the event.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.database.models import EventCorrelation

logger = logging.getLogger(__name__)


class CorrelationStore:
    """Repository for `EventCorrelation` rows. Callers own the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_local(
        self, synced_calendar_id: uuid.UUID, local_event_id: uuid.UUID
    ) -> EventCorrelation | None:
        result = await self.db.execute(
            select(EventCorrelation).where(
                EventCorrelation.synced_calendar_id == synced_calendar_id,
                EventCorrelation.local_event_id == local_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_external(
        self, synced_calendar_id: uuid.UUID, external_event_id: str
    ) -> EventCorrelation | None:
        result = await self.db.execute(
            select(EventCorrelation).where(
                EventCorrelation.synced_calendar_id == synced_calendar_id,
                EventCorrelation.external_event_id == external_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_pairing(
        self, synced_calendar_id: uuid.UUID
    ) -> list[EventCorrelation]:
        result = await self.db.execute(
            select(EventCorrelation).where(
                EventCorrelation.synced_calendar_id == synced_calendar_id
            )
        )
        return list(result.scalars().all())

    async def create(
        self,
        synced_calendar_id: uuid.UUID,
        local_event_id: uuid.UUID,
        external_event_id: str,
        last_modified_local: datetime | None,
        last_modified_external: datetime | None,
    ) -> EventCorrelation:
        correlation = EventCorrelation(
            synced_calendar_id=synced_calendar_id,
            local_event_id=local_event_id,
            external_event_id=external_event_id,
            last_modified_local=last_modified_local,
            last_modified_external=last_modified_external,
        )
        self.db.add(correlation)
        await self.db.flush()
        return correlation

    async def delete(self, correlation: EventCorrelation) -> None:
        await self.db.delete(correlation)
        await self.db.flush()

    async def delete_for_pairing(self, synced_calendar_id: uuid.UUID) -> int:
        """Drop every correlation of a pairing. Returns the number removed."""
        result = await self.db.execute(
            delete(EventCorrelation).where(
                EventCorrelation.synced_calendar_id == synced_calendar_id
            )
        )
        return result.rowcount or 0
