"""Provision a service instance.

The existence check and the ``(create, in progress)`` write happen under
one row lock before the broker is asked to provision, so a concurrent
create or delete sees the operation and backs off. An existing row may
only be re-created after a failed create. Broker outcomes:

  SyncSuccess   -> (create, succeeded), dashboard_url taken from the body
  AsyncAccepted -> stays in progress; a state-fetch job is enqueued
  BrokerError   -> (create, failed), ServiceBrokerBadResponse raised
  BrokerTimeout -> (create, failed), re-raised

Ambiguous failures (5xx, malformed body, timeout) schedule orphan
mitigation because the broker may have created the resource anyway.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from ..brokers.errors import BrokerTimeout, BrokerUnreachable, ServiceBrokerBadResponse
from ..brokers.outcomes import AsyncAccepted, SyncSuccess
from ..errors import AsyncServiceInstanceOperationInProgress, ServiceInstanceNameTaken
from ..jobs.state_fetch import ServiceInstanceStateFetch, poll_end_timestamp
from ..last_operation import (
    fail_operation,
    refresh_in_progress,
    start_operation,
    succeed_operation,
)
from ..models import ServiceInstance
from ..protocols import (
    BrokerClientFactory,
    JobScheduler,
    ServiceEventRecorder,
    ServiceInstanceRepository,
)
from ..settings import CloudControllerSettings
from .orphan_mitigation import OrphanMitigator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceInstanceCreate:
    """Creates managed and user-provided service instances."""

    def __init__(
        self,
        *,
        instances: ServiceInstanceRepository,
        brokers: BrokerClientFactory,
        events: ServiceEventRecorder,
        scheduler: JobScheduler,
        settings: CloudControllerSettings,
        orphan_mitigator: OrphanMitigator | None = None,
        request_attrs: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._instances = instances
        self._brokers = brokers
        self._events = events
        self._scheduler = scheduler
        self._settings = settings
        self._orphan_mitigator = orphan_mitigator or OrphanMitigator(
            brokers=brokers, scheduler=scheduler, settings=settings, clock=clock,
        )
        self._request_attrs = dict(request_attrs or {})
        self._clock = clock

    async def create(
        self,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> ServiceInstance:
        """Create ``instance`` and return the persisted row."""
        if instance.user_provided:
            await self._instances.save(instance)
            await self._events.record_user_provided_service_instance_event(
                'create', instance, self._request_attrs,
            )
            return instance

        if accepts_incomplete is None:
            accepts_incomplete = self._settings.default_accepts_incomplete

        async with self._instances.lock_and_reload(instance.guid) as existing:
            if existing is not None:
                if existing.operation_in_progress:
                    raise AsyncServiceInstanceOperationInProgress(existing.name)
                # Only a failed create may be retried in place.
                if not existing.create_failed:
                    raise ServiceInstanceNameTaken(existing.name)
            instance.last_operation = start_operation('create', now=self._clock())
            await self._instances.save(instance)

        client = self._brokers.for_broker(instance.broker)
        try:
            outcome = await client.provision(
                instance,
                accepts_incomplete=accepts_incomplete,
                parameters=parameters,
            )
        except BrokerTimeout as exc:
            await self._fail(instance, exc.message)
            await self._orphan_mitigator.cleanup_failed_provision(instance)
            raise
        except BrokerUnreachable as exc:
            await self._fail(instance, exc.message)
            raise
        except Exception as exc:
            await self._fail(instance, str(exc))
            raise

        if isinstance(outcome, SyncSuccess):
            return await self._succeed(instance, outcome)
        if isinstance(outcome, AsyncAccepted):
            return await self._start_polling(instance, outcome)

        error = ServiceBrokerBadResponse(
            outcome, method='PUT', url=f'/v2/service_instances/{instance.guid}',
        )
        await self._fail(instance, error.message)
        if outcome.ambiguous:
            await self._orphan_mitigator.cleanup_failed_provision(instance)
        raise error

    async def _succeed(
        self, instance: ServiceInstance, outcome: SyncSuccess,
    ) -> ServiceInstance:
        async with self._instances.lock_and_reload(instance.guid) as locked:
            if locked is None:
                return self._vanished(instance)
            dashboard_url = outcome.body.get('dashboard_url')
            if isinstance(dashboard_url, str) and dashboard_url:
                locked.dashboard_url = dashboard_url
            locked.last_operation = succeed_operation(
                locked.last_operation, now=self._clock(),
            )
            await self._instances.save(locked)

        logger.info(
            'Provisioned service instance %s',
            locked.guid,
            extra={'service_instance_guid': locked.guid},
        )
        await self._events.record_service_instance_event(
            'create', locked, self._request_attrs,
        )
        return locked

    async def _start_polling(
        self, instance: ServiceInstance, outcome: AsyncAccepted,
    ) -> ServiceInstance:
        now = self._clock()
        async with self._instances.lock_and_reload(instance.guid) as locked:
            if locked is None:
                return self._vanished(instance)
            locked.last_operation = refresh_in_progress(
                locked.last_operation, now=now, broker_operation=outcome.operation,
            )
            await self._instances.save(locked)

        await self._scheduler.enqueue(
            ServiceInstanceStateFetch(
                service_instance_guid=locked.guid,
                request_attrs=self._request_attrs,
                poll_interval=(
                    outcome.retry_after
                    or self._settings.broker_client_default_async_poll_interval_seconds
                ),
                end_timestamp=poll_end_timestamp(now, self._settings),
            ),
            run_at=now,
        )
        return locked

    async def _fail(self, instance: ServiceInstance, description: str) -> None:
        async with self._instances.lock_and_reload(instance.guid) as locked:
            if locked is None or not locked.operation_in_progress:
                return
            locked.last_operation = fail_operation(
                locked.last_operation, now=self._clock(), description=description,
            )
            await self._instances.save(locked)
        instance.last_operation = locked.last_operation
        logger.warning(
            'Provisioning service instance %s failed: %s',
            instance.guid,
            description,
            extra={'service_instance_guid': instance.guid},
        )

    def _vanished(self, instance: ServiceInstance) -> ServiceInstance:
        logger.warning(
            'Service instance %s was removed while it was being provisioned',
            instance.guid,
            extra={'service_instance_guid': instance.guid},
        )
        return instance
