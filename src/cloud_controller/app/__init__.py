"""Service instance and binding lifecycle for the cloud controller."""

from .services import (
    ServiceBindingDelete,
    ServiceInstanceCreate,
    ServiceInstanceDelete,
)
from .settings import CloudControllerSettings

__all__ = [
    "CloudControllerSettings",
    "ServiceBindingDelete",
    "ServiceInstanceCreate",
    "ServiceInstanceDelete",
]
