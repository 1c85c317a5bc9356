"""Delayed jobs: the in-memory scheduler and last-operation polling."""

from .scheduler import InMemoryJobScheduler, JobHandler, ScheduledJob, Worker, WorkerRunReport
from .state_fetch import (
    LastOperationPoller,
    ServiceBindingStateFetch,
    ServiceInstanceStateFetch,
    next_poll_interval,
    poll_end_timestamp,
)

__all__ = [
    'InMemoryJobScheduler',
    'JobHandler',
    'LastOperationPoller',
    'ScheduledJob',
    'ServiceBindingStateFetch',
    'ServiceInstanceStateFetch',
    'Worker',
    'WorkerRunReport',
    'next_poll_interval',
    'poll_end_timestamp',
]
