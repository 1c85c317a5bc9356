"""Async last-operation polling for service instances and bindings.

When a broker accepts a request asynchronously the lifecycle action
persists an ``in progress`` last operation and enqueues a state-fetch job.
Each run of the job asks the broker for the operation's state:

  in progress -> persist the broker's description, enqueue the next poll
  succeeded   -> delete: destroy the row; create/update: persist success;
                 either way record the audit event
  failed      -> persist the failure, stop polling

Re-running a job after the operation already finished is a no-op, so
duplicate deliveries are harmless. Broker errors and timeouts keep the
current state and poll again later; polling gives up once the job's
``end_timestamp`` has passed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Mapping

from ..brokers.errors import BrokerClientError
from ..brokers.outcomes import BrokerError, Gone, LastOperationReport
from ..last_operation import FAILED, IN_PROGRESS, SUCCEEDED, apply_broker_state
from ..observability.metrics import LAST_OPERATION_POLLS_TOTAL
from ..protocols import (
    BrokerClientFactory,
    JobScheduler,
    ServiceBindingRepository,
    ServiceEventRecorder,
    ServiceInstanceRepository,
)
from ..settings import CloudControllerSettings
from .scheduler import JobHandler

logger = logging.getLogger(__name__)


# ── Job payloads ─────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ServiceInstanceStateFetch:
    """Poll payload for one service instance's async operation."""

    name: ClassVar[str] = 'service-instance-state-fetch'

    service_instance_guid: str
    request_attrs: Mapping[str, Any] = field(default_factory=dict)
    poll_interval: float = 60.0
    end_timestamp: datetime | None = None
    attempt: int = 1

    @property
    def key(self) -> str:
        return f'{self.name}:{self.service_instance_guid}'


@dataclass(frozen=True, slots=True)
class ServiceBindingStateFetch:
    """Poll payload for one binding's async operation."""

    name: ClassVar[str] = 'service-binding-state-fetch'

    service_binding_guid: str
    request_attrs: Mapping[str, Any] = field(default_factory=dict)
    poll_interval: float = 60.0
    end_timestamp: datetime | None = None
    attempt: int = 1

    @property
    def key(self) -> str:
        return f'{self.name}:{self.service_binding_guid}'


def poll_end_timestamp(
    now: datetime, settings: CloudControllerSettings,
) -> datetime:
    return now + timedelta(minutes=settings.broker_client_max_async_poll_duration_minutes)


def next_poll_interval(
    job: ServiceInstanceStateFetch | ServiceBindingStateFetch,
    *,
    settings: CloudControllerSettings,
    retry_after: float | None = None,
) -> float:
    """Seconds until the next poll.

    A broker Retry-After hint wins; otherwise ``fixed`` keeps the job's
    interval and ``exponential`` doubles it per attempt. Both are capped
    at the configured maximum.
    """
    ceiling = settings.broker_client_max_async_poll_interval_seconds
    if retry_after is not None:
        return min(max(retry_after, 1.0), ceiling)
    interval = job.poll_interval
    if settings.broker_client_poll_backoff == 'exponential':
        interval = job.poll_interval * (2 ** (job.attempt - 1))
    return min(interval, ceiling)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Poller ───────────────────────────────────────────────────────────


class LastOperationPoller:
    """Handles state-fetch jobs for instances and bindings."""

    def __init__(
        self,
        *,
        instances: ServiceInstanceRepository,
        bindings: ServiceBindingRepository,
        brokers: BrokerClientFactory,
        events: ServiceEventRecorder,
        scheduler: JobScheduler,
        settings: CloudControllerSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._instances = instances
        self._bindings = bindings
        self._brokers = brokers
        self._events = events
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock

    def handlers(self) -> dict[type, JobHandler]:
        return {
            ServiceInstanceStateFetch: self.poll_instance,
            ServiceBindingStateFetch: self.poll_binding,
        }

    # ── Instances ───────────────────────────────────────────────────

    async def poll_instance(self, job: ServiceInstanceStateFetch) -> None:
        instance = await self._instances.find(job.service_instance_guid)
        if instance is None or not instance.operation_in_progress:
            logger.info(
                'Skipping state fetch for %s: no operation in progress',
                job.service_instance_guid,
                extra={'service_instance_guid': job.service_instance_guid},
            )
            return

        op = instance.last_operation
        now = self._clock()
        if job.end_timestamp is not None and now > job.end_timestamp:
            report = LastOperationReport(
                state=FAILED,
                description=f'Service Broker failed to {op.type} within the required time.',
            )
            await self._finish_instance(job, report, now)
            return

        client = self._brokers.for_broker(instance.broker)
        try:
            outcome = await client.fetch_last_operation(instance)
        except BrokerClientError as exc:
            logger.warning(
                'Last operation fetch for %s failed: %s',
                instance.guid,
                exc,
                extra={'service_instance_guid': instance.guid},
            )
            await self._reschedule(job, now)
            return

        if isinstance(outcome, Gone):
            outcome = _report_for_gone(op.type)
        if isinstance(outcome, BrokerError):
            logger.warning(
                'Broker returned %d polling %s: %s',
                outcome.status_code,
                instance.guid,
                outcome.description,
                extra={'service_instance_guid': instance.guid},
            )
            await self._reschedule(job, now)
            return

        LAST_OPERATION_POLLS_TOTAL.labels(
            resource='service_instance', state=outcome.state,
        ).inc()
        if outcome.state == IN_PROGRESS:
            async with self._instances.lock_and_reload(instance.guid) as locked:
                if locked is None or not locked.operation_in_progress:
                    return
                locked.last_operation = apply_broker_state(
                    locked.last_operation,
                    IN_PROGRESS,
                    now=now,
                    description=outcome.description or None,
                )
                await self._instances.save(locked)
            await self._reschedule(job, now, retry_after=outcome.retry_after)
            return

        await self._finish_instance(job, outcome, now)

    async def _finish_instance(
        self,
        job: ServiceInstanceStateFetch,
        report: LastOperationReport,
        now: datetime,
    ) -> None:
        async with self._instances.lock_and_reload(job.service_instance_guid) as locked:
            if locked is None or not locked.operation_in_progress:
                return
            op_type = locked.last_operation.type
            if report.state == SUCCEEDED and op_type == 'delete':
                await self._instances.delete(locked)
            else:
                locked.last_operation = apply_broker_state(
                    locked.last_operation,
                    report.state,
                    now=now,
                    description=report.description or None,
                )
                await self._instances.save(locked)

        logger.info(
            'Service instance %s %s %s',
            locked.guid,
            op_type,
            report.state,
            extra={'service_instance_guid': locked.guid},
        )
        if report.state == SUCCEEDED:
            await self._events.record_service_instance_event(
                op_type, locked, job.request_attrs,
            )

    # ── Bindings ────────────────────────────────────────────────────

    async def poll_binding(self, job: ServiceBindingStateFetch) -> None:
        binding = await self._bindings.find(job.service_binding_guid)
        if binding is None or not binding.operation_in_progress:
            logger.info(
                'Skipping state fetch for binding %s: no operation in progress',
                job.service_binding_guid,
            )
            return

        instance = await self._instances.find(binding.service_instance_guid)
        if instance is None or not instance.managed:
            logger.warning(
                'Binding %s has no broker-backed instance; dropping poll',
                binding.guid,
            )
            return

        op = binding.last_operation
        now = self._clock()
        if job.end_timestamp is not None and now > job.end_timestamp:
            report = LastOperationReport(
                state=FAILED,
                description=f'Service Broker failed to {op.type} within the required time.',
            )
            await self._finish_binding(job, report, now)
            return

        client = self._brokers.for_broker(instance.broker)
        try:
            outcome = await client.fetch_binding_last_operation(binding, instance)
        except BrokerClientError as exc:
            logger.warning('Binding last operation fetch for %s failed: %s', binding.guid, exc)
            await self._reschedule(job, now)
            return

        if isinstance(outcome, Gone):
            outcome = _report_for_gone(op.type)
        if isinstance(outcome, BrokerError):
            logger.warning(
                'Broker returned %d polling binding %s: %s',
                outcome.status_code,
                binding.guid,
                outcome.description,
            )
            await self._reschedule(job, now)
            return

        LAST_OPERATION_POLLS_TOTAL.labels(
            resource='service_binding', state=outcome.state,
        ).inc()
        if outcome.state == IN_PROGRESS:
            async with self._bindings.lock_and_reload(binding.guid) as locked:
                if locked is None or not locked.operation_in_progress:
                    return
                locked.last_operation = apply_broker_state(
                    locked.last_operation,
                    IN_PROGRESS,
                    now=now,
                    description=outcome.description or None,
                )
                await self._bindings.save(locked)
            await self._reschedule(job, now, retry_after=outcome.retry_after)
            return

        await self._finish_binding(job, outcome, now)

    async def _finish_binding(
        self,
        job: ServiceBindingStateFetch,
        report: LastOperationReport,
        now: datetime,
    ) -> None:
        async with self._bindings.lock_and_reload(job.service_binding_guid) as locked:
            if locked is None or not locked.operation_in_progress:
                return
            op_type = locked.last_operation.type
            if report.state == SUCCEEDED and op_type == 'delete':
                await self._bindings.delete(locked)
            else:
                locked.last_operation = apply_broker_state(
                    locked.last_operation,
                    report.state,
                    now=now,
                    description=report.description or None,
                )
                await self._bindings.save(locked)

        if report.state == SUCCEEDED:
            await self._events.record_service_binding_event(
                op_type, locked, job.request_attrs,
            )

    # ── Scheduling ──────────────────────────────────────────────────

    async def _reschedule(
        self,
        job: ServiceInstanceStateFetch | ServiceBindingStateFetch,
        now: datetime,
        *,
        retry_after: float | None = None,
    ) -> None:
        delay = next_poll_interval(job, settings=self._settings, retry_after=retry_after)
        successor = replace(job, attempt=job.attempt + 1)
        await self._scheduler.enqueue(successor, run_at=now + timedelta(seconds=delay))


def _report_for_gone(op_type: str) -> LastOperationReport:
    if op_type == 'delete':
        return LastOperationReport(state=SUCCEEDED)
    return LastOperationReport(state=FAILED, description='The resource no longer exists at the broker.')

