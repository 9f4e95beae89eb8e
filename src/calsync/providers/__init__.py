"""Calendar provider adapters (Google Calendar, Microsoft Graph)."""

from calsync.providers.adapter import ProviderAdapter, VARIANTS, get_variant
from calsync.providers.base import (
    CalendarListEntry,
    EventDelta,
    ProviderVariant,
    PushOperation,
    PushResult,
    SyncWindow,
)

__all__ = [
    "ProviderAdapter",
    "VARIANTS",
    "get_variant",
    "CalendarListEntry",
    "EventDelta",
    "ProviderVariant",
    "PushOperation",
    "PushResult",
    "SyncWindow",
]
