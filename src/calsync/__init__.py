"""Calendar Sync Engine.

Keeps locally owned calendar events consistent with Google Calendar and
Microsoft Graph calendars, in both directions.

## Components

- `calsync.auth`: OAuth consent, code exchange and token refresh
- `calsync.providers`: per-provider HTTP translation of sync operations
- `calsync.sync`: event mapping, correlation store, orchestrator, scheduler
- `calsync.events`: local calendar/event store and domain-event bus
- `calsync.api`: FastAPI application and sync routes
"""

__version__ = "0.1.0"
