"""In-process domain-event bus.

Local event CRUD publishes `event.created`, `event.updated` and
`event.deleted`. Handlers are plain callables run synchronously by `emit()`;
handlers that need I/O schedule their own tasks.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

EVENT_CREATED = "event.created"
EVENT_UPDATED = "event.updated"
EVENT_DELETED = "event.deleted"

Handler = Callable[[Any], None]


class DomainEventBus:
    """Publish/subscribe registry keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register `handler` for `name`. Returns a function that unsubscribes it."""
        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return unsubscribe

    def emit(self, name: str, payload: Any) -> None:
        """Call every handler for `name`. A failing handler does not stop the rest."""
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Handler for {name} failed")
