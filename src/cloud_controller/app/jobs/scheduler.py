"""Delayed-job scheduling: durable payloads plus a due-time.

Jobs are plain frozen dataclasses carrying everything a handler needs
(guids, request attributes, poll interval). Each job exposes a ``key``;
at most one pending job exists per key, so a resource never has two
competing poll chains. Enqueueing under an existing key replaces the
pending entry.

``Worker`` pops due jobs and dispatches them by payload type. A job that
wants to run again enqueues a successor; the scheduler never re-runs a
job on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    """A job payload waiting for its ``run_at``."""

    id: int
    key: str
    job: Any
    run_at: datetime


class InMemoryJobScheduler:
    """In-memory job queue for local development and tests."""

    def __init__(self) -> None:
        self._pending: dict[str, ScheduledJob] = {}
        self._next_id = 1

    async def enqueue(self, job: Any, *, run_at: datetime) -> ScheduledJob:
        _require_aware_datetime(run_at)
        key = job.key
        scheduled = ScheduledJob(id=self._next_id, key=key, job=job, run_at=run_at)
        self._next_id += 1
        if key in self._pending:
            logger.debug('Replacing pending job %s', key)
        self._pending[key] = scheduled
        return scheduled

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> list[ScheduledJob]:
        return sorted(self._pending.values(), key=lambda s: (s.run_at, s.id))

    def find(self, key: str) -> ScheduledJob | None:
        return self._pending.get(key)

    def pop_due(self, now: datetime) -> list[ScheduledJob]:
        _require_aware_datetime(now)
        due = [s for s in self.pending if s.run_at <= now]
        for scheduled in due:
            del self._pending[scheduled.key]
        return due


@dataclass(frozen=True, slots=True)
class WorkerRunReport:
    """Result of one ``Worker.run_due`` pass."""

    ran: int
    failed: int


class Worker:
    """Runs due jobs through handlers registered per payload type."""

    def __init__(
        self,
        scheduler: InMemoryJobScheduler,
        handlers: Mapping[type, JobHandler],
    ) -> None:
        self._scheduler = scheduler
        self._handlers = dict(handlers)

    async def run_due(self, now: datetime) -> WorkerRunReport:
        ran = failed = 0
        for scheduled in self._scheduler.pop_due(now):
            handler = self._handlers.get(type(scheduled.job))
            if handler is None:
                logger.error(
                    'No handler registered for job %s (%s)',
                    scheduled.key,
                    type(scheduled.job).__name__,
                )
                failed += 1
                continue
            try:
                await handler(scheduled.job)
            except Exception:
                logger.exception('Job %s failed', scheduled.key)
                failed += 1
            else:
                ran += 1
        return WorkerRunReport(ran=ran, failed=failed)


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('run_at must be timezone-aware')
