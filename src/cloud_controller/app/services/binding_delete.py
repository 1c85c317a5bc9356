"""Delete one application or route binding.

Returns the error to report for the binding, or ``None`` once the
binding is gone (deleted now, or already deleted by someone else).

Broker outcomes:
  SyncSuccess / Gone -> delete the local row, record the audit event
  AsyncAccepted      -> binding goes to (delete, in progress), a poll job
                        is enqueued, and the binding is reported as busy
  BrokerError        -> row kept; ambiguous responses trigger orphan
                        mitigation
  BrokerTimeout      -> raised untouched: nothing local changes because
                        the broker may or may not have acted
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from ..brokers.errors import BrokerUnreachable, ServiceBrokerBadResponse
from ..brokers.outcomes import AsyncAccepted, Gone, SyncSuccess
from ..errors import (
    ApiError,
    AsyncServiceBindingOperationInProgress,
    AsyncServiceInstanceOperationInProgress,
)
from ..jobs.state_fetch import ServiceBindingStateFetch, poll_end_timestamp
from ..last_operation import start_operation
from ..models import ServiceBinding, ServiceInstance
from ..protocols import (
    BrokerClientFactory,
    JobScheduler,
    ServiceBindingRepository,
    ServiceEventRecorder,
)
from ..settings import CloudControllerSettings
from .orphan_mitigation import OrphanMitigator

logger = logging.getLogger(__name__)

BindingDeleteError = ApiError | ServiceBrokerBadResponse | BrokerUnreachable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceBindingDelete:
    """Deletes bindings against the broker, one at a time."""

    def __init__(
        self,
        *,
        bindings: ServiceBindingRepository,
        brokers: BrokerClientFactory,
        events: ServiceEventRecorder,
        scheduler: JobScheduler,
        orphan_mitigator: OrphanMitigator,
        settings: CloudControllerSettings,
        request_attrs: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._bindings = bindings
        self._brokers = brokers
        self._events = events
        self._scheduler = scheduler
        self._orphan_mitigator = orphan_mitigator
        self._settings = settings
        self._request_attrs = dict(request_attrs or {})
        self._clock = clock

    async def delete(
        self,
        binding: ServiceBinding,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
    ) -> BindingDeleteError | None:
        current = await self._bindings.find(binding.guid)
        if current is None:
            return None
        if instance.operation_in_progress:
            return AsyncServiceInstanceOperationInProgress(instance.name)
        if current.operation_in_progress:
            return AsyncServiceBindingOperationInProgress(current.guid, instance.name)

        if instance.user_provided:
            await self._bindings.delete(current)
            await self._events.record_service_binding_event(
                'delete', current, self._request_attrs,
            )
            return None

        client = self._brokers.for_broker(instance.broker)
        try:
            outcome = await client.unbind(
                current, instance, accepts_incomplete=accepts_incomplete,
            )
        except BrokerUnreachable as exc:
            return exc

        if isinstance(outcome, (SyncSuccess, Gone)):
            await self._bindings.delete(current)
            logger.info(
                'Unbound %s from service instance %s',
                current.guid,
                instance.guid,
                extra={'service_instance_guid': instance.guid, 'binding_guid': current.guid},
            )
            await self._events.record_service_binding_event(
                'delete', current, self._request_attrs,
            )
            return None

        if isinstance(outcome, AsyncAccepted):
            await self._start_async_unbind(current, outcome)
            return AsyncServiceBindingOperationInProgress(current.guid, instance.name)

        error = ServiceBrokerBadResponse(
            outcome,
            method='DELETE',
            url=f'/v2/service_instances/{instance.guid}/service_bindings/{current.guid}',
        )
        if outcome.ambiguous:
            await self._orphan_mitigator.cleanup_failed_unbind(current, instance)
        return error

    async def _start_async_unbind(
        self, binding: ServiceBinding, outcome: AsyncAccepted,
    ) -> None:
        now = self._clock()
        async with self._bindings.lock_and_reload(binding.guid) as locked:
            if locked is None:
                return
            locked.last_operation = start_operation(
                'delete', now=now, broker_operation=outcome.operation,
            )
            await self._bindings.save(locked)

        interval = (
            outcome.retry_after
            or self._settings.broker_client_default_async_poll_interval_seconds
        )
        await self._scheduler.enqueue(
            ServiceBindingStateFetch(
                service_binding_guid=binding.guid,
                request_attrs=self._request_attrs,
                poll_interval=interval,
                end_timestamp=poll_end_timestamp(now, self._settings),
            ),
            run_at=now,
        )
