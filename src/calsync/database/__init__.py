"""Database module for the calendar sync engine.

This module provides:
- SQLAlchemy async database connection
- Connection, pairing and correlation models plus the local calendar tables
- Encrypted storage for provider OAuth tokens
"""

from calsync.database.connection import (
    close_db,
    create_session_factory,
    create_tables,
    get_db,
    get_db_session,
    get_session_factory,
    init_db,
)
from calsync.database.models import (
    Base,
    Calendar,
    CalendarConnection,
    CalendarProvider,
    ConnectionStatus,
    Event,
    EventCorrelation,
    RecurrenceType,
    SyncedCalendar,
    User,
)

__all__ = [
    # Connection
    "close_db",
    "create_session_factory",
    "create_tables",
    "get_db",
    "get_db_session",
    "get_session_factory",
    "init_db",
    # Models
    "Base",
    "Calendar",
    "CalendarConnection",
    "CalendarProvider",
    "ConnectionStatus",
    "Event",
    "EventCorrelation",
    "RecurrenceType",
    "SyncedCalendar",
    "User",
]
