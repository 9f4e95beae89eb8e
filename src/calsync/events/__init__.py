"""Local calendar/event storage and the domain-event bus."""

from calsync.events.bus import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    DomainEventBus,
)
from calsync.events.store import CalendarStore, DeletedEvent, LocalEventStore

__all__ = [
    "EVENT_CREATED",
    "EVENT_DELETED",
    "EVENT_UPDATED",
    "DomainEventBus",
    "CalendarStore",
    "DeletedEvent",
    "LocalEventStore",
]
