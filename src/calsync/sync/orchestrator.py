"""Sync orchestrator.

Keeps local calendars and their paired provider calendars consistent.

## Sync Run

For one connection, `run_sync()` walks every pairing:

1. **Pull**: fetch the provider delta since the stored cursor
   a. Apply deletions first (local event and correlation removed)
   b. Create local events for unknown external ids
   c. Update correlated local events when the provider copy is newer than
      both watermarks (last-writer-wins)
   d. Store the next cursor
2. **Push** (bidirectional pairings only): for local events inside the sync
   window that the pull did not touch
   a. Create remote events for uncorrelated local events
   b. Update remote events when the local copy is newer than both watermarks
   c. Delete remote events whose local event is gone
3. Stamp the pairing, then the connection, with the sync time

Every mirrored change is committed on its own, and a correlation row is only
written once the mutation on the other side succeeded.

## Concurrency

A connection is in at most one run at a time per orchestrator. The running
set is checked and claimed before the first await, so a second trigger for
the same connection returns a skipped result without contacting the
provider. Real-time hooks claim the same guard.

## Failures

- Per-event failures are logged and the run moves on
- Per-pairing failures (e.g. a 5xx on the delta feed) are logged and the
  next pairing proceeds
- `ProviderAuthError` and `ReauthorizationRequiredError` abort the run and
  propagate to the caller
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calsync.auth.tokens import TokenManager
from calsync.config import Settings, get_settings
from calsync.database.models import (
    CalendarConnection,
    ConnectionStatus,
    Event,
    EventCorrelation,
    SyncedCalendar,
)
from calsync.errors import ProviderAuthError, ReauthorizationRequiredError
from calsync.events.bus import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_UPDATED,
    DomainEventBus,
)
from calsync.events.store import CalendarStore, DeletedEvent, LocalEventStore
from calsync.providers.adapter import ProviderAdapter
from calsync.providers.base import PushOperation
from calsync.sync.automation import IMPORT_TRIGGERS, AutomationService
from calsync.sync.correlation import CorrelationStore
from calsync.sync.mapper import (
    get_external_last_modified,
    is_syncable_local_event,
    needs_event_details,
    to_local_event,
)
from calsync.sync.timezones import safe_user_timezone

logger = logging.getLogger(__name__)

# Errors that end the whole run for a connection
_CONNECTION_ERRORS = (ProviderAuthError, ReauthorizationRequiredError)

# Errors that must not be swallowed per event
_ABORT_EVENT_ERRORS = (*_CONNECTION_ERRORS, SQLAlchemyError)


def _is_newer(timestamp: datetime | None, *watermarks: datetime | None) -> bool:
    """True when `timestamp` is strictly after every recorded watermark."""
    if timestamp is None:
        return False
    return all(mark is None or timestamp > mark for mark in watermarks)


@dataclass
class PairingSyncResult:
    """Outcome of syncing one pairing."""

    synced_calendar_id: uuid.UUID
    external_calendar_id: str
    local_created: int = 0
    local_updated: int = 0
    local_deleted: int = 0
    remote_created: int = 0
    remote_updated: int = 0
    remote_deleted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def mutations(self) -> int:
        return (
            self.local_created
            + self.local_updated
            + self.local_deleted
            + self.remote_created
            + self.remote_updated
            + self.remote_deleted
        )


@dataclass
class ConnectionSyncResult:
    """Outcome of one `run_sync()` call."""

    connection_id: uuid.UUID
    provider: str
    skipped: bool = False
    pairings: list[PairingSyncResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return not self.errors and all(p.success for p in self.pairings)

    @property
    def mutations(self) -> int:
        return sum(p.mutations for p in self.pairings)


@dataclass
class _RunContext:
    db: AsyncSession
    connection: CalendarConnection
    adapter: ProviderAdapter
    events: LocalEventStore
    calendars: CalendarStore
    correlations: CorrelationStore
    user_timezone: str
    trigger_automation: bool = False
    selected_rule_ids: Sequence[Any] | None = None


class SyncOrchestrator:
    """Runs bidirectional syncs and pushes local changes as they happen.

    Example:
        ```python
        orchestrator = SyncOrchestrator(session_factory, http_client)
        unsubscribe = orchestrator.subscribe(bus)

        result = await orchestrator.run_sync(connection)
        print(result.mutations)

        await orchestrator.drain()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
        automation: AutomationService | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            session_factory: Factory used to open one session per unit of work
            http_client: Shared client for provider and token endpoints
            settings: Application settings (defaults to cached settings)
            automation: Optional rule engine notified about imported events
        """
        self.session_factory = session_factory
        self.http_client = http_client
        self.settings = settings or get_settings()
        self.automation = automation
        self._running: set[uuid.UUID] = set()
        self._tasks: set[asyncio.Task] = set()

    def is_running(self, connection_id: uuid.UUID) -> bool:
        return connection_id in self._running

    def _build_context(
        self,
        db: AsyncSession,
        connection: CalendarConnection,
        user_timezone: str,
        trigger_automation: bool = False,
        selected_rule_ids: Sequence[Any] | None = None,
    ) -> _RunContext:
        tokens = TokenManager(db, self.settings, self.http_client)
        return _RunContext(
            db=db,
            connection=connection,
            adapter=ProviderAdapter(tokens, self.http_client, self.settings),
            events=LocalEventStore(db),
            calendars=CalendarStore(db),
            correlations=CorrelationStore(db),
            user_timezone=user_timezone,
            trigger_automation=trigger_automation,
            selected_rule_ids=selected_rule_ids,
        )

    # -------------------------------------------------------------------------
    # Full sync
    # -------------------------------------------------------------------------

    async def run_sync(
        self,
        connection: CalendarConnection,
        *,
        trigger_automation: bool = False,
        selected_rule_ids: Sequence[Any] | None = None,
    ) -> ConnectionSyncResult:
        """Run pull-then-push for every pairing of a connection.

        Args:
            connection: Connection to sync (may belong to another session)
            trigger_automation: Hand newly imported events to the rule engine
            selected_rule_ids: Restrict automation to these rule ids

        Returns:
            ConnectionSyncResult, with `skipped` set when a run was in progress

        Raises:
            ProviderAuthError: If the provider rejects the credentials
            ReauthorizationRequiredError: If the refresh token was revoked
        """
        connection_id = connection.id
        provider = connection.provider

        if connection_id in self._running:
            logger.warning(
                f"Sync already running for connection {connection_id} "
                f"({provider}); skipping"
            )
            return ConnectionSyncResult(connection_id, provider, skipped=True)

        self._running.add(connection_id)
        try:
            return await self._run(
                connection_id, provider, trigger_automation, selected_rule_ids
            )
        finally:
            self._running.discard(connection_id)

    async def _run(
        self,
        connection_id: uuid.UUID,
        provider: str,
        trigger_automation: bool,
        selected_rule_ids: Sequence[Any] | None,
    ) -> ConnectionSyncResult:
        result = ConnectionSyncResult(connection_id, provider)

        async with self.session_factory() as db:
            connection = await db.get(CalendarConnection, connection_id)
            if connection is None or not connection.is_active:
                logger.info(f"Connection {connection_id} is not active; nothing to sync")
                result.skipped = True
                return result

            logger.info(
                f"Starting sync for connection {connection_id} "
                f"({provider}, user {connection.user_id})"
            )

            events = LocalEventStore(db)
            user_timezone = safe_user_timezone(
                await events.find_user_timezone(connection.user_id)
            )
            ctx = self._build_context(
                db, connection, user_timezone, trigger_automation, selected_rule_ids
            )

            pairing_ids = (
                await db.execute(
                    select(SyncedCalendar.id)
                    .where(SyncedCalendar.connection_id == connection_id)
                    .order_by(SyncedCalendar.created_at)
                )
            ).scalars().all()
            logger.info(f"Found {len(pairing_ids)} synced calendars")

            for pairing_id in pairing_ids:
                pairing = await db.get(SyncedCalendar, pairing_id)
                if pairing is None:
                    continue
                pairing_result = PairingSyncResult(
                    pairing.id, pairing.external_calendar_id
                )
                result.pairings.append(pairing_result)
                try:
                    await self._sync_pairing(ctx, pairing, pairing_result)
                except _CONNECTION_ERRORS:
                    logger.error(
                        f"Authorization failed for connection {connection_id}; "
                        f"aborting sync"
                    )
                    raise
                except Exception as e:
                    logger.exception(
                        f"Error syncing calendar {pairing.external_calendar_id}: {e}"
                    )
                    pairing_result.errors.append(str(e))
                    if isinstance(e, SQLAlchemyError):
                        await db.rollback()
                        await db.refresh(connection)

            connection.last_sync_at = datetime.now(timezone.utc)
            await db.commit()
            result.synced_at = connection.last_sync_at

        logger.info(
            f"Sync completed for connection {connection_id} ({provider}): "
            f"{result.mutations} changes across {len(result.pairings)} calendars"
        )
        return result

    async def _sync_pairing(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        result: PairingSyncResult,
    ) -> None:
        logger.info(
            f"Syncing calendar {pairing.external_calendar_name} "
            f"({pairing.external_calendar_id})"
        )

        touched = await self._pull(ctx, pairing, result)
        if pairing.bidirectional_sync:
            await self._push(ctx, pairing, touched, result)

        pairing.last_sync_at = datetime.now(timezone.utc)
        await ctx.db.commit()

    # -------------------------------------------------------------------------
    # Pull: provider -> local
    # -------------------------------------------------------------------------

    async def _pull(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        result: PairingSyncResult,
    ) -> set[uuid.UUID]:
        """Apply the provider delta. Returns the ids of local events it touched."""
        delta = await ctx.adapter.fetch_event_delta(
            ctx.connection,
            pairing.external_calendar_id,
            pairing.sync_token,
            ctx.user_timezone,
        )
        logger.info(
            f"Found {len(delta.events)} external events "
            f"({len(delta.deleted_ids)} deletions)"
        )

        calendar = await ctx.calendars.get(pairing.local_calendar_id)
        color = calendar.color if calendar else None
        by_external = {
            c.external_event_id: c
            for c in await ctx.correlations.list_for_pairing(pairing.id)
        }
        touched: set[uuid.UUID] = set()

        for external_id in delta.deleted_ids:
            correlation = by_external.pop(external_id, None)
            if correlation is None:
                continue
            local_event_id = correlation.local_event_id
            if await ctx.events.delete(local_event_id):
                result.local_deleted += 1
            await ctx.correlations.delete(correlation)
            await ctx.events.commit()
            touched.add(local_event_id)

        for external_event in delta.events:
            external_id = external_event.get("id")
            if not external_id:
                continue
            try:
                correlation = by_external.get(external_id)
                if correlation is None:
                    event = await self._create_local(
                        ctx, pairing, color, external_event
                    )
                    if event is not None:
                        result.local_created += 1
                        touched.add(event.id)
                        by_external[external_id] = await ctx.correlations.find_by_external(
                            pairing.id, external_id
                        )
                    continue

                event = await self._update_local(
                    ctx, pairing, color, correlation, external_event
                )
                if event is not None:
                    result.local_updated += 1
                    touched.add(event.id)
            except _ABORT_EVENT_ERRORS:
                raise
            except Exception as e:
                logger.exception(
                    f"Error importing external event {external_id}: {e}"
                )
                result.errors.append(f"{external_id}: {e}")

        pairing.sync_token = delta.next_cursor
        await ctx.db.commit()
        return touched

    async def _event_source(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        external_event: dict[str, Any],
    ) -> dict[str, Any]:
        provider = ctx.connection.provider
        if not needs_event_details(provider, external_event):
            return external_event

        logger.warning(
            f"Missing details for event {external_event['id']}; fetching full event"
        )
        details = await ctx.adapter.fetch_event_details(
            ctx.connection,
            pairing.external_calendar_id,
            external_event["id"],
            ctx.user_timezone,
        )
        if details:
            return {**external_event, **details}
        return external_event

    async def _create_local(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        color: str | None,
        external_event: dict[str, Any],
    ) -> Event | None:
        source = await self._event_source(ctx, pairing, external_event)
        data = to_local_event(ctx.connection.provider, source, ctx.user_timezone)
        if data.start_date is None:
            logger.warning(f"Skipping external event {source['id']}: no start date")
            return None

        event = await ctx.events.create(
            pairing.local_calendar_id,
            created_by_id=ctx.connection.user_id,
            color=color,
            **data.as_fields(),
        )
        await ctx.correlations.create(
            pairing.id,
            event.id,
            source["id"],
            last_modified_local=event.updated_at,
            last_modified_external=get_external_last_modified(source),
        )
        await ctx.events.commit()
        logger.info(f"Created local event {event.id} from external event {source['id']}")

        if ctx.trigger_automation:
            self._spawn(
                self._trigger_import_rules(
                    event.id, ctx.connection.user_id, ctx.selected_rule_ids
                ),
                f"automation for event {event.id}",
            )
        return event

    async def _update_local(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        color: str | None,
        correlation: EventCorrelation,
        external_event: dict[str, Any],
    ) -> Event | None:
        external_modified = get_external_last_modified(external_event)
        if not _is_newer(
            external_modified,
            correlation.last_modified_external,
            correlation.last_modified_local,
        ):
            return None

        event = await ctx.events.get(correlation.local_event_id)
        if event is None:
            logger.warning(
                f"Local event {correlation.local_event_id} is gone; "
                f"recreating it from {correlation.external_event_id}"
            )
            await ctx.correlations.delete(correlation)
            return await self._create_local(ctx, pairing, color, external_event)

        source = await self._event_source(ctx, pairing, external_event)
        data = to_local_event(ctx.connection.provider, source, ctx.user_timezone)
        if data.start_date is None:
            logger.warning(f"Skipping external event {source['id']}: no start date")
            return None

        await ctx.events.update(event, **data.as_fields())
        correlation.last_modified_external = external_modified
        correlation.last_modified_local = event.updated_at
        await ctx.events.commit()
        logger.info(f"Updated local event {event.id} from external event {source['id']}")
        return event

    # -------------------------------------------------------------------------
    # Push: local -> provider
    # -------------------------------------------------------------------------

    async def _push(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        touched: set[uuid.UUID],
        result: PairingSyncResult,
    ) -> None:
        window = ctx.adapter.local_window()
        local_events = await ctx.events.find(
            pairing.local_calendar_id, window.start.date(), window.end.date()
        )
        by_local = {
            c.local_event_id: c
            for c in await ctx.correlations.list_for_pairing(pairing.id)
        }

        for event in local_events:
            if event.id in touched or not is_syncable_local_event(event):
                continue
            try:
                correlation = by_local.get(event.id)
                if correlation is None:
                    if await self._push_create(ctx, pairing, event):
                        result.remote_created += 1
                elif await self._push_update(ctx, pairing, event, correlation):
                    result.remote_updated += 1
            except _ABORT_EVENT_ERRORS:
                raise
            except Exception as e:
                logger.exception(f"Error pushing local event {event.id}: {e}")
                result.errors.append(f"{event.id}: {e}")

        existing = await ctx.events.list_ids(pairing.local_calendar_id)
        for local_event_id, correlation in by_local.items():
            if local_event_id in existing or local_event_id in touched:
                continue
            try:
                if await self._push_delete(ctx, pairing, correlation):
                    result.remote_deleted += 1
            except _ABORT_EVENT_ERRORS:
                raise
            except Exception as e:
                logger.exception(
                    f"Error deleting remote event {correlation.external_event_id}: {e}"
                )
                result.errors.append(f"{correlation.external_event_id}: {e}")

    async def _push_create(
        self, ctx: _RunContext, pairing: SyncedCalendar, event: Event
    ) -> bool:
        pushed = await ctx.adapter.push_event(
            ctx.connection,
            pairing.external_calendar_id,
            PushOperation.CREATE,
            event,
            user_timezone=ctx.user_timezone,
        )
        if pushed is None:
            return False

        duplicate = await ctx.correlations.find_by_external(
            pairing.id, pushed.external_id
        )
        if duplicate is not None:
            logger.warning(
                f"External event {pushed.external_id} is already correlated "
                f"with local event {duplicate.local_event_id}"
            )
            return False

        await ctx.correlations.create(
            pairing.id,
            event.id,
            pushed.external_id,
            last_modified_local=event.updated_at,
            last_modified_external=pushed.last_modified,
        )
        await ctx.db.commit()
        logger.info(f"Created remote event {pushed.external_id} for local event {event.id}")
        return True

    async def _push_update(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        event: Event,
        correlation: EventCorrelation,
    ) -> bool:
        if not _is_newer(
            event.updated_at,
            correlation.last_modified_local,
            correlation.last_modified_external,
        ):
            return False

        pushed = await ctx.adapter.push_event(
            ctx.connection,
            pairing.external_calendar_id,
            PushOperation.UPDATE,
            event,
            external_event_id=correlation.external_event_id,
            user_timezone=ctx.user_timezone,
        )
        if pushed is None:
            return False

        # Must cover the provider's stamp of this write or the next pull re-imports it
        correlation.last_modified_local = max(event.updated_at, pushed.last_modified)
        await ctx.db.commit()
        logger.info(
            f"Updated remote event {correlation.external_event_id} "
            f"from local event {event.id}"
        )
        return True

    async def _push_delete(
        self,
        ctx: _RunContext,
        pairing: SyncedCalendar,
        correlation: EventCorrelation,
    ) -> bool:
        pushed = await ctx.adapter.push_event(
            ctx.connection,
            pairing.external_calendar_id,
            PushOperation.DELETE,
            external_event_id=correlation.external_event_id,
            user_timezone=ctx.user_timezone,
        )
        if pushed is None:
            return False

        await ctx.correlations.delete(correlation)
        await ctx.db.commit()
        logger.info(f"Deleted remote event {correlation.external_event_id}")
        return True

    # -------------------------------------------------------------------------
    # Automation
    # -------------------------------------------------------------------------

    async def _trigger_import_rules(
        self,
        event_id: uuid.UUID,
        user_id: uuid.UUID,
        selected_rule_ids: Sequence[Any] | None = None,
    ) -> None:
        """Run the user's import rules against a freshly imported event."""
        if self.automation is None:
            return

        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
            if event is None:
                return

            rules: list[Any] = []
            for trigger in IMPORT_TRIGGERS:
                try:
                    rules.extend(
                        await self.automation.find_rules_by_trigger(trigger, user_id)
                        or []
                    )
                except Exception as e:
                    logger.exception(f"Error loading {trigger} automation rules: {e}")

            if selected_rule_ids:
                selected = set(selected_rule_ids)
                rules = [rule for rule in rules if getattr(rule, "id", None) in selected]
            if not rules:
                return

            logger.info(
                f"Executing {len(rules)} automation rules for imported event {event_id}"
            )
            for rule in rules:
                try:
                    await self.automation.execute_rule_on_event(rule, event)
                except Exception as e:
                    logger.error(
                        f"Failed to execute automation rule "
                        f"{getattr(rule, 'id', rule)} on imported event {event_id}: {e}"
                    )

    # -------------------------------------------------------------------------
    # Real-time hooks
    # -------------------------------------------------------------------------

    def subscribe(self, bus: DomainEventBus) -> Callable[[], None]:
        """Push local changes as they are committed. Returns an unsubscribe function."""
        unsubscribers = [
            bus.subscribe(EVENT_CREATED, self.on_event_created),
            bus.subscribe(EVENT_UPDATED, self.on_event_updated),
            bus.subscribe(EVENT_DELETED, self.on_event_deleted),
        ]

        def unsubscribe() -> None:
            for unsubscriber in unsubscribers:
                unsubscriber()

        return unsubscribe

    def on_event_created(self, event: Event) -> None:
        self._spawn(
            self._push_local_change(event.id, event.calendar_id, deleted=False),
            f"push of created event {event.id}",
        )

    def on_event_updated(self, event: Event) -> None:
        self._spawn(
            self._push_local_change(event.id, event.calendar_id, deleted=False),
            f"push of updated event {event.id}",
        )

    def on_event_deleted(self, event: DeletedEvent | Event) -> None:
        self._spawn(
            self._push_local_change(event.id, event.calendar_id, deleted=True),
            f"push of deleted event {event.id}",
        )

    def _spawn(self, coro: Coroutine[Any, Any, None], description: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Background {description} failed: {error!r}")

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for every background push and automation task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _push_local_change(
        self,
        event_id: uuid.UUID,
        calendar_id: uuid.UUID,
        deleted: bool,
    ) -> None:
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(SyncedCalendar, CalendarConnection)
                    .join(
                        CalendarConnection,
                        SyncedCalendar.connection_id == CalendarConnection.id,
                    )
                    .where(
                        SyncedCalendar.local_calendar_id == calendar_id,
                        SyncedCalendar.bidirectional_sync.is_(True),
                        CalendarConnection.status == ConnectionStatus.ACTIVE.value,
                    )
                )
            ).all()
            targets = [(pairing.id, connection.id) for pairing, connection in rows]

            for pairing_id, connection_id in targets:
                if connection_id in self._running:
                    logger.info(
                        f"Sync running for connection {connection_id}; "
                        f"leaving event {event_id} to that run"
                    )
                    continue

                self._running.add(connection_id)
                try:
                    pairing = await db.get(SyncedCalendar, pairing_id)
                    connection = await db.get(CalendarConnection, connection_id)
                    if pairing is None or connection is None:
                        continue
                    await self._push_single(db, connection, pairing, event_id, deleted)
                except Exception as e:
                    logger.exception(
                        f"Failed to push local event {event_id} "
                        f"for pairing {pairing_id}: {e}"
                    )
                    await db.rollback()
                finally:
                    self._running.discard(connection_id)

    async def _push_single(
        self,
        db: AsyncSession,
        connection: CalendarConnection,
        pairing: SyncedCalendar,
        event_id: uuid.UUID,
        deleted: bool,
    ) -> None:
        events = LocalEventStore(db)
        user_timezone = safe_user_timezone(
            await events.find_user_timezone(connection.user_id)
        )
        ctx = self._build_context(db, connection, user_timezone)
        correlation = await ctx.correlations.find_by_local(pairing.id, event_id)

        if deleted:
            if correlation is not None:
                await self._push_delete(ctx, pairing, correlation)
            return

        event = await ctx.events.get(event_id)
        if event is None or not is_syncable_local_event(event):
            return
        if correlation is None:
            await self._push_create(ctx, pairing, event)
        else:
            await self._push_update(ctx, pairing, event, correlation)
