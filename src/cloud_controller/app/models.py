"""Domain records for service brokers, plans, instances and bindings.

Managed and user-provided instances share one record tagged by
``InstanceKind``; application and route bindings share one record tagged
by ``BindingKind``. Callers dispatch on the tag instead of on subclasses.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from .last_operation import LastOperation


class InstanceKind(enum.Enum):
    MANAGED = 'managed'
    USER_PROVIDED = 'user_provided'


class BindingKind(enum.Enum):
    APP = 'app'
    ROUTE = 'route'


@dataclass(frozen=True, slots=True)
class ServiceBroker:
    """Registered broker endpoint and its basic-auth credentials."""

    guid: str
    name: str
    broker_url: str
    auth_username: str = ''
    auth_password: str = ''


@dataclass(frozen=True, slots=True)
class ServicePlan:
    """Plan as advertised in the broker catalog."""

    guid: str
    name: str
    unique_id: str
    service_unique_id: str
    broker: ServiceBroker
    bindable: bool = True


class _LastOperationMixin:
    """Lifecycle helpers shared by instances and bindings."""

    last_operation: LastOperation | None

    @property
    def terminal_state(self) -> bool:
        return self.last_operation is None or self.last_operation.terminal

    @property
    def operation_in_progress(self) -> bool:
        return self.last_operation is not None and self.last_operation.in_progress

    @property
    def create_failed(self) -> bool:
        op = self.last_operation
        return op is not None and op.type == 'create' and op.state == 'failed'

    @property
    def create_in_progress(self) -> bool:
        op = self.last_operation
        return op is not None and op.type == 'create' and op.in_progress


@dataclass
class ServiceInstance(_LastOperationMixin):
    """Row-level representation of a service instance.

    ``service_plan`` is required for managed instances. User-provided
    instances never carry a ``last_operation``.
    """

    guid: str
    name: str
    space_guid: str
    kind: InstanceKind = InstanceKind.MANAGED
    service_plan: ServicePlan | None = None
    last_operation: LastOperation | None = None
    credentials: dict[str, Any] = field(default_factory=dict)
    dashboard_url: str | None = None
    route_service_url: str | None = None
    syslog_drain_url: str | None = None

    def __post_init__(self) -> None:
        if self.kind is InstanceKind.MANAGED and self.service_plan is None:
            raise ValueError(f'managed service instance {self.guid!r} requires a service plan')
        if self.kind is InstanceKind.USER_PROVIDED and self.last_operation is not None:
            raise ValueError('user-provided service instances have no last operation')

    @property
    def managed(self) -> bool:
        return self.kind is InstanceKind.MANAGED

    @property
    def user_provided(self) -> bool:
        return self.kind is InstanceKind.USER_PROVIDED

    @property
    def broker(self) -> ServiceBroker | None:
        return self.service_plan.broker if self.service_plan else None


@dataclass
class ServiceBinding(_LastOperationMixin):
    """Application or route binding owned by one service instance."""

    guid: str
    service_instance_guid: str
    kind: BindingKind = BindingKind.APP
    app_guid: str | None = None
    route_guid: str | None = None
    name: str | None = None
    credentials: dict[str, Any] = field(default_factory=dict)
    syslog_drain_url: str | None = None
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)
    route_service_url: str | None = None
    last_operation: LastOperation | None = None

    def __post_init__(self) -> None:
        if self.kind is BindingKind.APP and not self.app_guid:
            raise ValueError(f'app binding {self.guid!r} requires app_guid')
        if self.kind is BindingKind.ROUTE and not self.route_guid:
            raise ValueError(f'route binding {self.guid!r} requires route_guid')

    @property
    def bound_resource_guid(self) -> str:
        return self.app_guid if self.kind is BindingKind.APP else self.route_guid
