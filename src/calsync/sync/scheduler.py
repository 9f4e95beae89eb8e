"""Periodic catch-up of active connections.

An APScheduler interval job ticks every `CALENDAR_SYNC_TICK_SECONDS` and
runs the orchestrator for every ACTIVE connection whose last sync is older
than `CALENDAR_SYNC_POLL_INTERVAL_MINUTES` (or that never synced).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calsync.config import Settings, get_settings
from calsync.database.models import CalendarConnection, ConnectionStatus
from calsync.errors import ReauthorizationRequiredError
from calsync.sync.orchestrator import ConnectionSyncResult, SyncOrchestrator

logger = logging.getLogger(__name__)

JOB_ID = "calendar-sync-tick"


class SyncScheduler:
    """Drives `SyncOrchestrator.run_sync` on a fixed tick.

    Example:
        ```python
        scheduler = SyncScheduler(session_factory, orchestrator)
        scheduler.start()
        ...
        scheduler.stop()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: SyncOrchestrator,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._scheduler: AsyncIOScheduler | None = None

    async def due_connections(
        self, now: datetime | None = None
    ) -> list[CalendarConnection]:
        """ACTIVE connections whose last sync is missing or older than the interval."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.settings.calendar_sync_poll_interval_minutes)
        async with self.session_factory() as db:
            result = await db.execute(
                select(CalendarConnection)
                .where(
                    CalendarConnection.status == ConnectionStatus.ACTIVE.value,
                    or_(
                        CalendarConnection.last_sync_at.is_(None),
                        CalendarConnection.last_sync_at <= cutoff,
                    ),
                )
                .order_by(CalendarConnection.created_at)
            )
            return list(result.scalars().all())

    async def tick(self) -> list[ConnectionSyncResult]:
        """Sync every due connection. One failing connection does not stop the rest."""
        connections = await self.due_connections()
        if connections:
            logger.info(f"Sync tick: {len(connections)} connections due")

        results: list[ConnectionSyncResult] = []
        for connection in connections:
            try:
                results.append(await self.orchestrator.run_sync(connection))
            except ReauthorizationRequiredError:
                logger.error(
                    f"Connection {connection.id} ({connection.provider}) must be "
                    f"re-authorized by the user"
                )
            except Exception as e:
                logger.exception(f"Failed syncing connection {connection.id}: {e}")
        return results

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.settings.calendar_sync_tick_seconds,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            f"Calendar sync scheduler started "
            f"(every {self.settings.calendar_sync_tick_seconds}s)"
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Calendar sync scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None
