"""Local calendar and event stores.

Thin repositories over the `calendars` and `events` tables. The sync engine
writes through them without a bus attached, so imported changes never echo
back to the provider. Application CRUD attaches a `DomainEventBus`; the
store then publishes each change once the transaction has committed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.database.models import Calendar, Event, User, utcnow
from calsync.events.bus import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    DomainEventBus,
)

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_COLOR = "#3b82f6"


@dataclass(frozen=True)
class DeletedEvent:
    """What remains known about an event after it was deleted."""

    id: uuid.UUID
    calendar_id: uuid.UUID


class LocalEventStore:
    """Repository for local events.

    Args:
        db: Session used for all queries
        bus: Optional bus to publish created/updated/deleted events on commit
    """

    def __init__(self, db: AsyncSession, bus: DomainEventBus | None = None):
        self.db = db
        self.bus = bus
        self._pending: list[tuple[str, Any]] = []

    async def get(self, event_id: uuid.UUID) -> Event | None:
        return await self.db.get(Event, event_id)

    async def find(
        self,
        calendar_id: uuid.UUID,
        start: date | None = None,
        end: date | None = None,
    ) -> list[Event]:
        """Events of a calendar whose start date falls in [start, end]."""
        query = select(Event).where(Event.calendar_id == calendar_id)
        if start is not None:
            query = query.where(Event.start_date >= start)
        if end is not None:
            query = query.where(Event.start_date <= end)
        result = await self.db.execute(query.order_by(Event.start_date))
        return list(result.scalars().all())

    async def list_ids(self, calendar_id: uuid.UUID) -> set[uuid.UUID]:
        result = await self.db.execute(
            select(Event.id).where(Event.calendar_id == calendar_id)
        )
        return set(result.scalars().all())

    async def create(self, calendar_id: uuid.UUID, **fields: Any) -> Event:
        now = utcnow()
        event = Event(calendar_id=calendar_id, created_at=now, updated_at=now, **fields)
        self.db.add(event)
        await self.db.flush()
        self._pending.append((EVENT_CREATED, event))
        return event

    async def update(self, event: Event, **fields: Any) -> Event:
        for name, value in fields.items():
            setattr(event, name, value)
        event.updated_at = utcnow()
        await self.db.flush()
        self._pending.append((EVENT_UPDATED, event))
        return event

    async def delete(self, event_id: uuid.UUID) -> bool:
        """Delete an event. Returns False when it did not exist."""
        event = await self.get(event_id)
        if event is None:
            return False
        snapshot = DeletedEvent(id=event.id, calendar_id=event.calendar_id)
        await self.db.delete(event)
        await self.db.flush()
        self._pending.append((EVENT_DELETED, snapshot))
        return True

    async def commit(self) -> None:
        """Commit and publish the changes made since the last commit."""
        await self.db.commit()
        pending, self._pending = self._pending, []
        if self.bus is None:
            return
        for name, payload in pending:
            self.bus.emit(name, payload)

    async def find_user_timezone(self, user_id: uuid.UUID) -> str | None:
        result = await self.db.execute(select(User.timezone).where(User.id == user_id))
        return result.scalar_one_or_none()


class CalendarStore:
    """Repository for local calendars."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, calendar_id: uuid.UUID) -> Calendar | None:
        return await self.db.get(Calendar, calendar_id)

    async def create(
        self,
        owner_id: uuid.UUID,
        name: str,
        description: str | None = None,
        color: str = DEFAULT_CALENDAR_COLOR,
    ) -> Calendar:
        calendar = Calendar(
            owner_id=owner_id, name=name, description=description, color=color
        )
        self.db.add(calendar)
        await self.db.flush()
        return calendar

    async def delete(self, calendar_id: uuid.UUID) -> None:
        """Delete a calendar together with its events."""
        await self.db.execute(delete(Event).where(Event.calendar_id == calendar_id))
        await self.db.execute(delete(Calendar).where(Calendar.id == calendar_id))
        logger.info(f"Deleted local calendar {calendar_id}")
