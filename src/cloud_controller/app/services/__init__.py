"""Lifecycle actions: provision, unbind and deprovision."""

from .binding_delete import BindingDeleteError, ServiceBindingDelete
from .instance_create import ServiceInstanceCreate
from .instance_delete import ServiceInstanceDelete
from .orphan_mitigation import OrphanMitigationJob, OrphanMitigator

__all__ = [
    'BindingDeleteError',
    'OrphanMitigationJob',
    'OrphanMitigator',
    'ServiceBindingDelete',
    'ServiceInstanceCreate',
    'ServiceInstanceDelete',
]
