"""Service lifecycle event recording on top of the audit emitter.

Translates "instance X was deleted" style facts into ``AuditEvent`` rows.
Request attributes are copied into the event metadata with credentials
and other sensitive keys redacted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .audit import AuditEmitter, AuditEvent
from .models import BindingKind, ServiceBinding, ServiceInstance
from .observability.metrics import AUDIT_EVENTS_EMITTED

logger = logging.getLogger(__name__)

LIFECYCLE_ACTIONS = frozenset({'create', 'update', 'delete'})

# Keys that must never appear in audit metadata.
_SENSITIVE_KEYS = frozenset({
    'authorization',
    'auth_password',
    'credentials',
    'password',
    'secret',
    'token',
    'api_key',
})


def sanitize_request_attrs(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-copy payload with sensitive keys redacted."""
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            sanitized[key] = '[REDACTED]'
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_request_attrs(value)
        else:
            sanitized[key] = value
    return sanitized


@dataclass(frozen=True, slots=True)
class UserAuditInfo:
    """Who triggered the request being audited."""

    user_guid: str
    user_email: str | None = None
    user_name: str | None = None


SYSTEM_ACTOR = UserAuditInfo(user_guid='system', user_name='cloud_controller')


class AuditServiceEventRepository:
    """``ServiceEventRecorder`` backed by an ``AuditEmitter``."""

    def __init__(
        self,
        emitter: AuditEmitter,
        *,
        user_audit_info: UserAuditInfo = SYSTEM_ACTOR,
    ) -> None:
        self._emitter = emitter
        self._actor = user_audit_info

    async def record_service_instance_event(
        self,
        action: str,
        instance: ServiceInstance,
        request_attrs: Mapping[str, Any] | None = None,
    ) -> None:
        await self._emit(
            f'audit.service_instance.{_require_action(action)}',
            actee_guid=instance.guid,
            actee_type='service_instance',
            actee_name=instance.name,
            space_guid=instance.space_guid,
            request_attrs=request_attrs,
        )

    async def record_user_provided_service_instance_event(
        self,
        action: str,
        instance: ServiceInstance,
        request_attrs: Mapping[str, Any] | None = None,
    ) -> None:
        await self._emit(
            f'audit.user_provided_service_instance.{_require_action(action)}',
            actee_guid=instance.guid,
            actee_type='user_provided_service_instance',
            actee_name=instance.name,
            space_guid=instance.space_guid,
            request_attrs=request_attrs,
        )

    async def record_service_binding_event(
        self,
        action: str,
        binding: ServiceBinding,
        request_attrs: Mapping[str, Any] | None = None,
    ) -> None:
        noun = 'route_binding' if binding.kind is BindingKind.ROUTE else 'service_binding'
        await self._emit(
            f'audit.{noun}.{_require_action(action)}',
            actee_guid=binding.guid,
            actee_type=noun,
            actee_name=binding.name or '',
            request_attrs=request_attrs,
            extra_metadata={
                'service_instance_guid': binding.service_instance_guid,
                'bound_resource_guid': binding.bound_resource_guid,
            },
        )

    async def _emit(
        self,
        action: str,
        *,
        actee_guid: str,
        actee_type: str,
        actee_name: str,
        space_guid: str = '',
        request_attrs: Mapping[str, Any] | None,
        extra_metadata: Mapping[str, Any] | None = None,
    ) -> None:
        request = sanitize_request_attrs(request_attrs or {})
        metadata: dict[str, Any] = {'request': request, **(extra_metadata or {})}
        await self._emitter.emit(
            AuditEvent(
                action=action,
                actor_guid=self._actor.user_guid,
                actor_name=self._actor.user_email or self._actor.user_name,
                actee_guid=actee_guid,
                actee_type=actee_type,
                actee_name=actee_name,
                space_guid=space_guid,
                request_id=request.get('request_id'),
                metadata=metadata,
            )
        )
        AUDIT_EVENTS_EMITTED.labels(action=action).inc()
        logger.info(
            'Audit event %s for %s %s',
            action,
            actee_type,
            actee_guid,
            extra={'actee_guid': actee_guid},
        )


def _require_action(action: str) -> str:
    if action not in LIFECYCLE_ACTIONS:
        raise ValueError(f'unknown lifecycle action: {action!r}')
    return action
