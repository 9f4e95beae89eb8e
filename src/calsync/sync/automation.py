"""Automation collaborator interface.

The sync engine can hand freshly imported events to an automation rule
engine. The engine itself lives outside this package; anything with this
shape can be injected into the orchestrator.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol, Sequence, runtime_checkable

from calsync.database.models import Event

TRIGGER_EVENT_CREATED = "event.created"
TRIGGER_CALENDAR_IMPORTED = "calendar.imported"
IMPORT_TRIGGERS = (TRIGGER_EVENT_CREATED, TRIGGER_CALENDAR_IMPORTED)


@runtime_checkable
class AutomationService(Protocol):
    """Rule engine consulted after events are imported."""

    async def find_rules_by_trigger(
        self, trigger_type: str, user_id: uuid.UUID
    ) -> Sequence[Any]:
        """Enabled rules of a user for one trigger. Rules expose an `id`."""
        ...

    async def execute_rule_on_event(self, rule: Any, event: Event) -> Any:
        ...
