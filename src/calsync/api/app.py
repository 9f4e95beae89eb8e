"""FastAPI application factory.

Creates and configures the FastAPI application with the sync routes, the
shared HTTP client, the sync orchestrator and the background scheduler.

## Usage

```python
from calsync.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
```

## Configuration

The app is configured via environment variables. See `calsync.config` for
available settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.config import get_settings
from calsync.database.connection import close_db, get_session_factory, init_db
from calsync.events.bus import DomainEventBus
from calsync.sync.automation import AutomationService
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def create_lifespan(
    bus: DomainEventBus,
    automation: AutomationService | None = None,
    start_scheduler: bool = True,
):
    """Build the lifespan handler wiring the sync engine into the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        settings = get_settings()
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        await init_db()
        session_factory = get_session_factory()

        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        orchestrator = SyncOrchestrator(
            session_factory, http_client, settings, automation=automation
        )
        unsubscribe = orchestrator.subscribe(bus)
        scheduler = SyncScheduler(session_factory, orchestrator, settings)
        if start_scheduler:
            scheduler.start()

        app.state.http_client = http_client
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler
        app.state.event_bus = bus

        yield

        logger.info("Shutting down")
        scheduler.stop()
        unsubscribe()
        await orchestrator.drain()
        await http_client.aclose()
        await close_db()

    return lifespan


def create_app(
    bus: DomainEventBus | None = None,
    automation: AutomationService | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        bus: Domain-event bus the host application publishes local changes on
        automation: Optional rule engine notified about imported events
        start_scheduler: Run the periodic sync tick in this process

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Bidirectional sync between local and provider calendars",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=create_lifespan(bus or DomainEventBus(), automation, start_scheduler),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    from calsync.api.routes import sync

    app.include_router(sync.router, prefix="/api/calendar-sync", tags=["Calendar Sync"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
