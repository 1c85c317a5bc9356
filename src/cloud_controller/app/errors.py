"""API error types surfaced by batch service-instance operations.

These are returned (not raised) from the deletion actions so that a
batch can report every per-item failure while still completing the
items that could succeed.
"""

from __future__ import annotations


class ApiError(Exception):
    """Base error carrying a stable name and numeric code."""

    name = 'ApiError'
    code = 10001

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AsyncServiceInstanceOperationInProgress(ApiError):
    """Another operation holds the instance's last-operation lock."""

    name = 'AsyncServiceInstanceOperationInProgress'
    code = 60016

    def __init__(self, instance_name: str) -> None:
        self.instance_name = instance_name
        super().__init__(
            f'An operation for service instance {instance_name} is in progress.'
        )


class ServiceInstanceNameTaken(ApiError):
    """A live instance already occupies the row being created."""

    name = 'ServiceInstanceNameTaken'
    code = 60002

    def __init__(self, instance_name: str) -> None:
        self.instance_name = instance_name
        super().__init__(f'The service instance name is taken: {instance_name}')


class AsyncServiceBindingOperationInProgress(ApiError):
    """The binding has its own unfinished broker operation."""

    name = 'AsyncServiceBindingOperationInProgress'
    code = 90008

    def __init__(self, binding_guid: str, instance_name: str) -> None:
        self.binding_guid = binding_guid
        self.instance_name = instance_name
        super().__init__(
            f'An operation for the service binding {binding_guid} of service '
            f'instance {instance_name} is in progress.'
        )


class LocalPersistenceFailure(ApiError):
    """A local repository write failed (constraint violation, etc.)."""

    name = 'LocalPersistenceFailure'
    code = 10011

    @classmethod
    def from_exception(cls, exc: BaseException) -> LocalPersistenceFailure:
        error = cls(str(exc))
        error.__cause__ = exc
        return error
