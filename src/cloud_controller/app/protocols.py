"""Repository, broker and scheduler protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, a database-backed store in deployments) must
satisfy. The deletion/provisioning actions and the poller accept any
implementation that matches them.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable

from .brokers.outcomes import LastOperationOutcome, Outcome
from .models import BindingKind, ServiceBinding, ServiceBroker, ServiceInstance


@runtime_checkable
class ServiceInstanceRepository(Protocol):
    """Transactional service-instance storage.

    ``lock_and_reload`` yields the freshly loaded row (or None when it is
    gone) while holding that row's lock; writes made inside the block are
    rolled back if the block raises.
    """

    async def find(self, guid: str) -> ServiceInstance | None: ...
    async def save(self, instance: ServiceInstance) -> ServiceInstance: ...
    async def delete(self, instance: ServiceInstance) -> bool: ...
    def lock_and_reload(
        self, guid: str,
    ) -> AbstractAsyncContextManager[ServiceInstance | None]: ...


@runtime_checkable
class ServiceBindingRepository(Protocol):
    """Transactional storage for app and route bindings."""

    async def find(self, guid: str) -> ServiceBinding | None: ...
    async def list_for_instance(
        self, instance_guid: str, kind: BindingKind | None = None,
    ) -> list[ServiceBinding]: ...
    async def save(self, binding: ServiceBinding) -> ServiceBinding: ...
    async def delete(self, binding: ServiceBinding) -> bool: ...
    def lock_and_reload(
        self, guid: str,
    ) -> AbstractAsyncContextManager[ServiceBinding | None]: ...


@runtime_checkable
class ServiceEventRecorder(Protocol):
    """Audit events for service lifecycle outcomes."""

    async def record_service_instance_event(
        self, action: str, instance: ServiceInstance, request_attrs: Mapping[str, Any],
    ) -> None: ...
    async def record_user_provided_service_instance_event(
        self, action: str, instance: ServiceInstance, request_attrs: Mapping[str, Any],
    ) -> None: ...
    async def record_service_binding_event(
        self, action: str, binding: ServiceBinding, request_attrs: Mapping[str, Any],
    ) -> None: ...


@runtime_checkable
class JobScheduler(Protocol):
    """Durable delayed-job queue."""

    async def enqueue(self, job: Any, *, run_at: datetime) -> Any: ...


@runtime_checkable
class BrokerClient(Protocol):
    """Broker protocol calls used by the lifecycle actions."""

    async def provision(
        self,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
        parameters: Mapping[str, Any] | None = None,
    ) -> Outcome: ...
    async def deprovision(
        self, instance: ServiceInstance, *, accepts_incomplete: bool = False,
    ) -> Outcome: ...
    async def unbind(
        self,
        binding: ServiceBinding,
        instance: ServiceInstance,
        *,
        accepts_incomplete: bool = False,
    ) -> Outcome: ...
    async def fetch_last_operation(
        self, instance: ServiceInstance,
    ) -> LastOperationOutcome: ...
    async def fetch_binding_last_operation(
        self, binding: ServiceBinding, instance: ServiceInstance,
    ) -> LastOperationOutcome: ...


@runtime_checkable
class BrokerClientFactory(Protocol):
    """Resolves the client for a broker record."""

    def for_broker(self, broker: ServiceBroker) -> BrokerClient: ...
