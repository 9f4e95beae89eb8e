"""Database models for the calendar sync engine.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret
- Connections are cleared of tokens when the user disconnects

## Schema Overview

```
users
├── calendars (1:N)
│   └── events (1:N)
└── calendar_connections (1:N, one per provider) - encrypted tokens
    └── synced_calendars (1:N, one per external calendar)
        └── event_correlations (1:N, one per mirrored event)
```

Relationships are navigated with explicit queries. All rows referencing a
pairing are deleted by the sync service, not by ORM cascades.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from calsync.database.encryption import decrypt_token, encrypt_token


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    Backends without native timezone support (SQLite) return naive values;
    those are stored and read back as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        datetime: UTCDateTime,
        uuid.UUID: Uuid,
    }


class CalendarProvider(str, Enum):
    """External calendar provider."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"


class ConnectionStatus(str, Enum):
    """Lifecycle of a provider connection."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class RecurrenceType(str, Enum):
    """Recurrence of a local event."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class User(Base):
    """User account model.

    Only the fields the sync engine reads are modelled here; the timezone is
    the zone in which local event dates and times are expressed.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    timezone: Mapped[str | None] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Calendar(Base):
    """A locally owned calendar."""

    __tablename__ = "calendars"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str] = mapped_column(String(16), default="#3b82f6")

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Calendar {self.name}>"


class Event(Base):
    """A locally owned calendar event.

    Dates and times are wall-clock values in the owner's timezone. Times are
    stored as "HH:MM" strings and are absent for all-day events; the end date
    of an all-day event is inclusive.

    A recurrence template has a recurrence type other than NONE and no
    parent. Materialised instances point at their template through
    `parent_event_id`. `recurrence_id` holds the provider-side series id of
    events imported from a recurring external series.
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE")
    )
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )

    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(512))
    color: Mapped[str | None] = mapped_column(String(16))

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str | None] = mapped_column(String(5))
    end_date: Mapped[date | None] = mapped_column(Date)
    end_time: Mapped[str | None] = mapped_column(String(5))
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)

    recurrence_type: Mapped[str] = mapped_column(
        String(16), default=RecurrenceType.NONE.value
    )
    parent_event_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE")
    )
    recurrence_id: Mapped[str | None] = mapped_column(String(255))
    original_date: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        Index("ix_events_calendar_start", "calendar_id", "start_date"),
    )

    @property
    def is_recurrence_template(self) -> bool:
        return (
            self.recurrence_type is not None
            and self.recurrence_type != RecurrenceType.NONE.value
            and self.parent_event_id is None
        )

    def __repr__(self) -> str:
        return f"<Event {self.title[:30]}>"


class CalendarConnection(Base):
    """An authorised link between a user and one external provider.

    Tokens are encrypted at rest. Use the `access_token` and `refresh_token`
    properties to read and write plaintext values.
    """

    __tablename__ = "calendar_connections"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_user_id: Mapped[str | None] = mapped_column(String(255))

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column()

    status: Mapped[str] = mapped_column(
        String(16), default=ConnectionStatus.ACTIVE.value
    )
    last_sync_at: Mapped[datetime | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connection_user_provider"),
        Index("ix_calendar_connections_status", "status", "last_sync_at"),
    )

    @property
    def access_token(self) -> str | None:
        if not self.access_token_encrypted:
            return None
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        self.access_token_encrypted = encrypt_token(value) if value else None

    @property
    def refresh_token(self) -> str | None:
        if not self.refresh_token_encrypted:
            return None
        return decrypt_token(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        self.refresh_token_encrypted = encrypt_token(value) if value else None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<CalendarConnection provider={self.provider} user_id={self.user_id}>"


class SyncedCalendar(Base):
    """Pairing of one external calendar with one local calendar."""

    __tablename__ = "synced_calendars"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendar_connections.id", ondelete="CASCADE")
    )
    local_calendar_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE")
    )

    external_calendar_id: Mapped[str] = mapped_column(String(512), nullable=False)
    external_calendar_name: Mapped[str | None] = mapped_column(String(255))
    bidirectional_sync: Mapped[bool] = mapped_column(Boolean, default=True)

    # Opaque provider delta cursor (sync token or delta link)
    sync_token: Mapped[str | None] = mapped_column(Text)
    last_sync_at: Mapped[datetime | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_calendar_id", name="uq_synced_calendar"
        ),
        Index("ix_synced_calendars_local", "local_calendar_id"),
    )

    def __repr__(self) -> str:
        return f"<SyncedCalendar {self.external_calendar_name or self.external_calendar_id}>"


class EventCorrelation(Base):
    """Correlates one local event with one external event within a pairing.

    Each side carries its own last-modified watermark: the last instant at
    which a change from that side was mirrored to the other.
    """

    __tablename__ = "event_correlations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    synced_calendar_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("synced_calendars.id", ondelete="CASCADE")
    )
    local_event_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(1024), nullable=False)

    last_modified_local: Mapped[datetime | None] = mapped_column()
    last_modified_external: Mapped[datetime | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "synced_calendar_id", "local_event_id", name="uq_correlation_local"
        ),
        UniqueConstraint(
            "synced_calendar_id", "external_event_id", name="uq_correlation_external"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EventCorrelation local={self.local_event_id} "
            f"external={self.external_event_id}>"
        )
