"""FastAPI application and routes.

## API Structure

- /api/calendar-sync - Provider connections, pairings and sync triggers
- /health - Liveness check

## Authentication

Sync endpoints require a session cookie issued by the host application.
The OAuth callback is matched to its user through the state token instead.
"""

from calsync.api.app import create_app

__all__ = ["create_app"]
