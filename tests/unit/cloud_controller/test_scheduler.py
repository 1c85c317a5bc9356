"""Tests for the in-memory job scheduler and worker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from cloud_controller.app.jobs.scheduler import InMemoryJobScheduler, Worker

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class PingJob:
    target: str

    @property
    def key(self) -> str:
        return f'ping:{self.target}'


@dataclass(frozen=True)
class UnknownJob:
    key: str = 'unknown'


@pytest.mark.asyncio
async def test_enqueue_replaces_pending_job_with_same_key():
    scheduler = InMemoryJobScheduler()

    await scheduler.enqueue(PingJob('a'), run_at=NOW)
    await scheduler.enqueue(PingJob('a'), run_at=NOW + timedelta(seconds=30))

    assert len(scheduler) == 1
    assert scheduler.find('ping:a').run_at == NOW + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_enqueue_requires_aware_run_at():
    with pytest.raises(ValueError):
        await InMemoryJobScheduler().enqueue(PingJob('a'), run_at=datetime(2024, 1, 1))


@pytest.mark.asyncio
async def test_pop_due_returns_jobs_in_run_at_order():
    scheduler = InMemoryJobScheduler()
    await scheduler.enqueue(PingJob('late'), run_at=NOW + timedelta(seconds=10))
    await scheduler.enqueue(PingJob('early'), run_at=NOW)
    await scheduler.enqueue(PingJob('future'), run_at=NOW + timedelta(hours=1))

    due = scheduler.pop_due(NOW + timedelta(seconds=10))

    assert [s.job.target for s in due] == ['early', 'late']
    assert [s.key for s in scheduler.pending] == ['ping:future']


@pytest.mark.asyncio
async def test_worker_dispatches_by_job_type_and_counts_failures():
    scheduler = InMemoryJobScheduler()
    seen = []

    async def handle_ping(job: PingJob) -> None:
        if job.target == 'bad':
            raise RuntimeError('boom')
        seen.append(job.target)

    await scheduler.enqueue(PingJob('ok'), run_at=NOW)
    await scheduler.enqueue(PingJob('bad'), run_at=NOW)
    await scheduler.enqueue(UnknownJob(), run_at=NOW)

    report = await Worker(scheduler, {PingJob: handle_ping}).run_due(NOW)

    assert seen == ['ok']
    assert report.ran == 1
    assert report.failed == 2
    assert len(scheduler) == 0
