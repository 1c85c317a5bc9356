"""Shared fixtures for cloud_controller unit tests.

Repositories, the audit emitter and the scheduler are the in-memory
implementations. Broker calls go to ``FakeBrokerClient``, which returns
scripted outcomes (or raises scripted exceptions) and records every call.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pytest

from cloud_controller.app.audit import InMemoryAuditEmitter
from cloud_controller.app.brokers.outcomes import LastOperationReport, SyncSuccess
from cloud_controller.app.events import AuditServiceEventRepository
from cloud_controller.app.inmemory import (
    InMemoryServiceBindingRepository,
    InMemoryServiceInstanceRepository,
)
from cloud_controller.app.jobs.scheduler import InMemoryJobScheduler
from cloud_controller.app.last_operation import LastOperation
from cloud_controller.app.models import (
    BindingKind,
    InstanceKind,
    ServiceBinding,
    ServiceBroker,
    ServiceInstance,
    ServicePlan,
)
from cloud_controller.app.services.binding_delete import ServiceBindingDelete
from cloud_controller.app.services.instance_delete import ServiceInstanceDelete
from cloud_controller.app.services.orphan_mitigation import OrphanMitigator
from cloud_controller.app.settings import CloudControllerSettings

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeBrokerClient:
    """Scripted stand-in for ``ServiceBrokerClient``."""

    _DEFAULTS = {
        'provision': SyncSuccess({}),
        'deprovision': SyncSuccess({}),
        'unbind': SyncSuccess({}),
        'fetch_last_operation': LastOperationReport(state='succeeded'),
        'fetch_binding_last_operation': LastOperationReport(state='succeeded'),
    }

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self._scripts: dict[tuple[str, str], list[Any]] = {}
        self._hooks: dict[str, Callable[[], Awaitable[None]]] = {}

    def script(self, method: str, guid: str, *results: Any) -> None:
        """Queue ``results`` for calls to ``method`` targeting ``guid``."""
        self._scripts.setdefault((method, guid), []).extend(results)

    def on_call(self, method: str, hook: Callable[[], Awaitable[None]]) -> None:
        """Await ``hook`` inside every ``method`` call, before it responds."""
        self._hooks[method] = hook

    def called(self, method: str) -> list[str]:
        return [guid for m, guid, _ in self.calls if m == method]

    async def _respond(self, method: str, guid: str, **kwargs: Any) -> Any:
        self.calls.append((method, guid, kwargs))
        hook = self._hooks.get(method)
        if hook is not None:
            await hook()
        queue = self._scripts.get((method, guid))
        result = queue.pop(0) if queue else self._DEFAULTS[method]
        if isinstance(result, BaseException):
            raise result
        return result

    async def provision(self, instance, *, accepts_incomplete=False, parameters=None):
        return await self._respond(
            'provision', instance.guid, accepts_incomplete=accepts_incomplete,
        )

    async def deprovision(self, instance, *, accepts_incomplete=False):
        return await self._respond(
            'deprovision', instance.guid, accepts_incomplete=accepts_incomplete,
        )

    async def unbind(self, binding, instance, *, accepts_incomplete=False):
        return await self._respond(
            'unbind', binding.guid, accepts_incomplete=accepts_incomplete,
        )

    async def fetch_last_operation(self, instance):
        return await self._respond('fetch_last_operation', instance.guid)

    async def fetch_binding_last_operation(self, binding, instance):
        return await self._respond('fetch_binding_last_operation', binding.guid)


class FakeBrokerProvider:
    def __init__(self, client: FakeBrokerClient) -> None:
        self.client = client
        self.brokers: list[ServiceBroker] = []

    def for_broker(self, broker: ServiceBroker) -> FakeBrokerClient:
        self.brokers.append(broker)
        return self.client


@pytest.fixture
def settings() -> CloudControllerSettings:
    return CloudControllerSettings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker() -> ServiceBroker:
    return ServiceBroker(
        guid='broker-1',
        name='mysql-broker',
        broker_url='http://broker.example.com',
        auth_username='admin',
        auth_password='s3cret',
    )


@pytest.fixture
def plan(broker) -> ServicePlan:
    return ServicePlan(
        guid='plan-1',
        name='small',
        unique_id='plan-unique-1',
        service_unique_id='service-unique-1',
        broker=broker,
    )


@pytest.fixture
def instances() -> InMemoryServiceInstanceRepository:
    return InMemoryServiceInstanceRepository()


@pytest.fixture
def bindings() -> InMemoryServiceBindingRepository:
    return InMemoryServiceBindingRepository()


@pytest.fixture
def emitter() -> InMemoryAuditEmitter:
    return InMemoryAuditEmitter()


@pytest.fixture
def events(emitter) -> AuditServiceEventRepository:
    return AuditServiceEventRepository(emitter)


@pytest.fixture
def scheduler() -> InMemoryJobScheduler:
    return InMemoryJobScheduler()


@pytest.fixture
def broker_client() -> FakeBrokerClient:
    return FakeBrokerClient()


@pytest.fixture
def brokers(broker_client) -> FakeBrokerProvider:
    return FakeBrokerProvider(broker_client)


@pytest.fixture
def orphan_mitigator(brokers, scheduler, settings, clock) -> OrphanMitigator:
    return OrphanMitigator(
        brokers=brokers, scheduler=scheduler, settings=settings, clock=clock,
    )


@pytest.fixture
def make_instance(instances, plan):
    """Persist and return a service instance."""

    async def _make(
        guid: str,
        *,
        name: str | None = None,
        kind: InstanceKind = InstanceKind.MANAGED,
        last_operation: LastOperation | None = None,
    ) -> ServiceInstance:
        instance = ServiceInstance(
            guid=guid,
            name=name or f'name-{guid}',
            space_guid='space-1',
            kind=kind,
            service_plan=plan if kind is InstanceKind.MANAGED else None,
            last_operation=last_operation,
        )
        await instances.save(instance)
        return instance

    return _make


@pytest.fixture
def make_binding(bindings):
    """Persist and return an app (default) or route binding."""

    async def _make(
        guid: str,
        instance: ServiceInstance,
        *,
        kind: BindingKind = BindingKind.APP,
        last_operation: LastOperation | None = None,
    ) -> ServiceBinding:
        binding = ServiceBinding(
            guid=guid,
            service_instance_guid=instance.guid,
            kind=kind,
            app_guid=f'app-{guid}' if kind is BindingKind.APP else None,
            route_guid=f'route-{guid}' if kind is BindingKind.ROUTE else None,
            name=f'binding-{guid}',
            last_operation=last_operation,
        )
        await bindings.save(binding)
        return binding

    return _make


@pytest.fixture
def binding_delete(bindings, brokers, events, scheduler, orphan_mitigator, settings, clock):
    return ServiceBindingDelete(
        bindings=bindings,
        brokers=brokers,
        events=events,
        scheduler=scheduler,
        orphan_mitigator=orphan_mitigator,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def make_deleter(instances, bindings, brokers, events, scheduler, settings, orphan_mitigator, clock):
    def _make(**kwargs: Any) -> ServiceInstanceDelete:
        return ServiceInstanceDelete(
            instances=instances,
            bindings=bindings,
            brokers=brokers,
            events=events,
            scheduler=scheduler,
            settings=settings,
            orphan_mitigator=orphan_mitigator,
            clock=clock,
            **kwargs,
        )

    return _make
