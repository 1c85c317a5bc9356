"""Audit events for service lifecycle outcomes.

An event names the action (``audit.service_instance.delete`` and friends),
the actor, the actee and its space, plus a redacted metadata payload.
Deployments plug in an emitter backed by the events table; the in-memory
store below backs local runs and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Protocol


@dataclass(frozen=True)
class AuditEvent:
    action: str
    actor_guid: str
    actee_guid: str
    actee_type: str
    actee_name: str = ''
    space_guid: str = ''
    actor_name: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None


class AuditEmitter(Protocol):
    async def emit(self, event: AuditEvent) -> AuditEvent: ...


class InMemoryAuditEmitter:
    """Append-only event log; stored copies carry a sequential id."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._ids = count(1)

    async def emit(self, event: AuditEvent) -> AuditEvent:
        stored = replace(event, id=next(self._ids))
        self._events.append(stored)
        return stored

    def by_action(self, action: str) -> list[AuditEvent]:
        return [e for e in self._events if e.action == action]

    def for_actee(self, actee_guid: str) -> list[AuditEvent]:
        return [e for e in self._events if e.actee_guid == actee_guid]

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)
