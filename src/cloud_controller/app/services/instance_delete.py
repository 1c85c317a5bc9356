"""Batch deletion of service instances and everything bound to them.

Each instance is an isolated unit of work, processed strictly in input
order:

  1. Gone already            -> skipped, not an error.
  2. Operation in progress   -> one AsyncServiceInstanceOperationInProgress
                                per dependent binding (or one for the
                                instance when it has none); nothing touched.
  3. User-provided           -> bindings and row deleted locally.
  4. Managed                 -> app bindings, then route bindings, unbound
                                at the broker; any failure keeps the
                                instance.
  5. Deprovision             -> (delete, in progress) is persisted under the
                                row lock before the broker is called, then
                                the outcome decides: destroy, poll, or fail.

Per-item failures are collected and returned in the order they happened;
work already completed for earlier items is never rolled back. Only a
broker timeout escapes as an exception: a timed-out unbind leaves every
local row untouched, a timed-out deprovision marks the instance's delete
as failed first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from ..brokers.errors import (
    BrokerClientError,
    BrokerTimeout,
    BrokerUnreachable,
    ServiceBrokerBadResponse,
)
from ..brokers.outcomes import AsyncAccepted, Gone, Outcome, SyncSuccess
from ..errors import AsyncServiceInstanceOperationInProgress, LocalPersistenceFailure
from ..jobs.state_fetch import ServiceInstanceStateFetch, poll_end_timestamp
from ..last_operation import (
    LastOperation,
    fail_operation,
    refresh_in_progress,
    start_operation,
)
from ..models import BindingKind, InstanceKind, ServiceBinding, ServiceInstance
from ..observability.logging import request_context
from ..observability.metrics import SERVICE_INSTANCE_DELETES_TOTAL
from ..protocols import (
    BrokerClientFactory,
    JobScheduler,
    ServiceBindingRepository,
    ServiceEventRecorder,
    ServiceInstanceRepository,
)
from ..settings import CloudControllerSettings
from .binding_delete import ServiceBindingDelete
from .orphan_mitigation import OrphanMitigator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceInstanceDelete:
    """Deletes service instances with their app and route bindings.

    ``accepts_incomplete`` defaults to the configured default (false).
    With ``multipart_delete`` an asynchronously accepted deprovision is
    also reported as an in-progress error, for callers deleting a whole
    space or org that must not report success while the broker works.
    """

    def __init__(
        self,
        *,
        instances: ServiceInstanceRepository,
        bindings: ServiceBindingRepository,
        brokers: BrokerClientFactory,
        events: ServiceEventRecorder,
        scheduler: JobScheduler,
        settings: CloudControllerSettings,
        accepts_incomplete: bool | None = None,
        multipart_delete: bool = False,
        request_attrs: Mapping[str, Any] | None = None,
        orphan_mitigator: OrphanMitigator | None = None,
        binding_delete: ServiceBindingDelete | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._instances = instances
        self._bindings = bindings
        self._brokers = brokers
        self._events = events
        self._scheduler = scheduler
        self._settings = settings
        self._accepts_incomplete = (
            settings.default_accepts_incomplete
            if accepts_incomplete is None
            else accepts_incomplete
        )
        self._multipart_delete = multipart_delete
        self._request_attrs = dict(request_attrs or {})
        self._clock = clock
        orphan_mitigator = orphan_mitigator or OrphanMitigator(
            brokers=brokers, scheduler=scheduler, settings=settings, clock=clock,
        )
        self._binding_delete = binding_delete or ServiceBindingDelete(
            bindings=bindings,
            brokers=brokers,
            events=events,
            scheduler=scheduler,
            orphan_mitigator=orphan_mitigator,
            settings=settings,
            request_attrs=self._request_attrs,
            clock=clock,
        )

    async def delete(self, instances: Sequence[ServiceInstance]) -> list[Exception]:
        """Delete ``instances`` in order; return every per-item error.

        An empty list means every instance and its bindings are gone (or
        handed to the broker for async completion). Raises
        ``BrokerTimeout`` when a broker call times out.
        """
        errors: list[Exception] = []
        with request_context(self._request_attrs.get('request_id')):
            for requested in instances:
                instance = await self._instances.find(requested.guid)
                if instance is None:
                    logger.debug(
                        'Service instance %s already deleted',
                        requested.guid,
                        extra={'service_instance_guid': requested.guid},
                    )
                    continue

                instance_errors = await self._delete_instance(instance)
                SERVICE_INSTANCE_DELETES_TOTAL.labels(
                    result='error' if instance_errors else 'ok',
                ).inc()
                errors.extend(instance_errors)
        return errors

    async def _delete_instance(self, instance: ServiceInstance) -> list[Exception]:
        dependents = await self._dependent_bindings(instance)

        if instance.operation_in_progress:
            logger.info(
                'Skipping service instance %s: operation in progress',
                instance.guid,
                extra={'service_instance_guid': instance.guid},
            )
            return [
                AsyncServiceInstanceOperationInProgress(instance.name)
                for _ in (dependents or [instance])
            ]

        if instance.kind is InstanceKind.USER_PROVIDED:
            return await self._delete_user_provided(instance, dependents)
        return await self._delete_managed(instance, dependents)

    async def _dependent_bindings(self, instance: ServiceInstance) -> list[ServiceBinding]:
        app_bindings = await self._bindings.list_for_instance(
            instance.guid, kind=BindingKind.APP,
        )
        route_bindings = await self._bindings.list_for_instance(
            instance.guid, kind=BindingKind.ROUTE,
        )
        return [*app_bindings, *route_bindings]

    # ── User-provided ───────────────────────────────────────────────

    async def _delete_user_provided(
        self,
        instance: ServiceInstance,
        dependents: list[ServiceBinding],
    ) -> list[Exception]:
        try:
            errors: list[Exception] = []
            for binding in dependents:
                error = await self._binding_delete.delete(binding, instance)
                if error is not None:
                    errors.append(error)
            if errors:
                return errors
            async with self._instances.lock_and_reload(instance.guid) as locked:
                if locked is None:
                    return []
                await self._instances.delete(locked)
            await self._events.record_user_provided_service_instance_event(
                'delete', instance, self._request_attrs,
            )
        except Exception as exc:
            logger.warning(
                'Deleting user-provided service instance %s failed: %s',
                instance.guid,
                exc,
                extra={'service_instance_guid': instance.guid},
            )
            return [LocalPersistenceFailure.from_exception(exc)]
        return []

    # ── Managed ─────────────────────────────────────────────────────

    async def _delete_managed(
        self,
        instance: ServiceInstance,
        dependents: list[ServiceBinding],
    ) -> list[Exception]:
        errors: list[Exception] = []
        for binding in dependents:
            try:
                error = await self._binding_delete.delete(
                    binding, instance, accepts_incomplete=self._accepts_incomplete,
                )
            except BrokerTimeout:
                raise
            except BrokerClientError as exc:
                error = exc
            except Exception as exc:
                error = LocalPersistenceFailure.from_exception(exc)
            if error is not None:
                errors.append(error)

        if errors:
            logger.info(
                'Keeping service instance %s: %d binding(s) could not be deleted',
                instance.guid,
                len(errors),
                extra={'service_instance_guid': instance.guid},
            )
            return errors

        return await self._deprovision(instance)

    async def _deprovision(self, instance: ServiceInstance) -> list[Exception]:
        async with self._instances.lock_and_reload(instance.guid) as locked:
            if locked is None:
                return []
            if locked.operation_in_progress:
                return [AsyncServiceInstanceOperationInProgress(locked.name)]
            previous = locked.last_operation
            locked.last_operation = start_operation('delete', now=self._clock())
            await self._instances.save(locked)

        client = self._brokers.for_broker(locked.broker)
        try:
            outcome = await client.deprovision(
                locked, accepts_incomplete=self._accepts_incomplete,
            )
        except BrokerTimeout as exc:
            await self._fail_delete(locked.guid, exc.message)
            raise
        except BrokerUnreachable as exc:
            await self._restore_operation(locked.guid, previous)
            return [exc]
        except Exception as exc:
            await self._fail_delete(locked.guid, str(exc))
            raise

        try:
            return await self._apply_deprovision_outcome(locked, outcome)
        except Exception as exc:
            logger.warning(
                'Finishing deletion of service instance %s failed: %s',
                locked.guid,
                exc,
                extra={'service_instance_guid': locked.guid},
            )
            await self._fail_delete(locked.guid, str(exc))
            return [LocalPersistenceFailure.from_exception(exc)]

    async def _apply_deprovision_outcome(
        self,
        instance: ServiceInstance,
        outcome: Outcome,
    ) -> list[Exception]:
        if isinstance(outcome, (SyncSuccess, Gone)):
            async with self._instances.lock_and_reload(instance.guid) as locked:
                if locked is not None:
                    await self._instances.delete(locked)
            logger.info(
                'Deleted service instance %s',
                instance.guid,
                extra={'service_instance_guid': instance.guid},
            )
            await self._events.record_service_instance_event(
                'delete', instance, self._request_attrs,
            )
            return []

        if isinstance(outcome, AsyncAccepted):
            await self._start_polling(instance, outcome)
            if self._multipart_delete:
                return [AsyncServiceInstanceOperationInProgress(instance.name)]
            return []

        error = ServiceBrokerBadResponse(
            outcome, method='DELETE', url=f'/v2/service_instances/{instance.guid}',
        )
        await self._fail_delete(instance.guid, error.message)
        return [error]

    async def _start_polling(
        self, instance: ServiceInstance, outcome: AsyncAccepted,
    ) -> None:
        now = self._clock()
        async with self._instances.lock_and_reload(instance.guid) as locked:
            if locked is None or not locked.operation_in_progress:
                return
            locked.last_operation = refresh_in_progress(
                locked.last_operation,
                now=now,
                broker_operation=outcome.operation,
            )
            await self._instances.save(locked)

        interval = (
            outcome.retry_after
            or self._settings.broker_client_default_async_poll_interval_seconds
        )
        await self._scheduler.enqueue(
            ServiceInstanceStateFetch(
                service_instance_guid=instance.guid,
                request_attrs=self._request_attrs,
                poll_interval=interval,
                end_timestamp=poll_end_timestamp(now, self._settings),
            ),
            run_at=now,
        )
        logger.info(
            'Service instance %s delete accepted asynchronously; polling every %.0fs',
            instance.guid,
            interval,
            extra={'service_instance_guid': instance.guid},
        )

    async def _fail_delete(self, guid: str, description: str) -> None:
        async with self._instances.lock_and_reload(guid) as locked:
            if locked is None or not locked.operation_in_progress:
                return
            locked.last_operation = fail_operation(
                locked.last_operation, now=self._clock(), description=description,
            )
            await self._instances.save(locked)

    async def _restore_operation(self, guid: str, previous: LastOperation | None) -> None:
        async with self._instances.lock_and_reload(guid) as locked:
            if locked is None:
                return
            locked.last_operation = previous
            await self._instances.save(locked)
