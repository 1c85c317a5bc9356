"""Service broker client and response normalization."""

from .client import BrokerClientProvider, ServiceBrokerClient
from .errors import (
    BrokerClientError,
    BrokerConnectionLost,
    BrokerTimeout,
    BrokerUnreachable,
    ServiceBrokerBadResponse,
)
from .outcomes import (
    AsyncAccepted,
    BrokerError,
    Gone,
    LastOperationReport,
    SyncSuccess,
)

__all__ = [
    "AsyncAccepted",
    "BrokerClientError",
    "BrokerClientProvider",
    "BrokerConnectionLost",
    "BrokerError",
    "BrokerTimeout",
    "BrokerUnreachable",
    "Gone",
    "LastOperationReport",
    "ServiceBrokerBadResponse",
    "ServiceBrokerClient",
    "SyncSuccess",
]
