"""Command-line interface for the calendar sync engine."""

import argparse
import asyncio
import logging
import sys

import httpx

from calsync import __version__
from calsync.config import get_settings
from calsync.database.connection import (
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "calsync.api.app:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
    )
    return 0


async def _init_db() -> int:
    await init_db()
    try:
        await create_tables()
    finally:
        await close_db()
    print("Database tables created.")
    return 0


async def _tick() -> int:
    settings = get_settings()
    await init_db()
    try:
        session_factory = get_session_factory()
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
            orchestrator = SyncOrchestrator(session_factory, client, settings)
            scheduler = SyncScheduler(session_factory, orchestrator, settings)
            results = await scheduler.tick()
    finally:
        await close_db()

    if not results:
        print("No connections due for sync.")
    for result in results:
        state = "skipped" if result.skipped else ("ok" if result.success else "errors")
        print(
            f"{result.provider:<10} {result.connection_id}  {state:<8} "
            f"{result.mutations} changes, {len(result.pairings)} calendars"
        )
    return 0 if all(r.success for r in results) else 1


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Calendar Sync Engine - Keep local calendars in sync with Google and Microsoft"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", help="Bind address (default: HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default: PORT)")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("tick", help="Sync every connection that is due, once")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return _serve(args)
    if args.command == "init-db":
        return asyncio.run(_init_db())
    if args.command == "tick":
        return asyncio.run(_tick())
    return 0


if __name__ == "__main__":
    sys.exit(main())
