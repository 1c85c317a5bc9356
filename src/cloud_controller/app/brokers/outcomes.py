"""Typed outcomes of broker calls.

Every broker response is normalized into exactly one of these values so
callers dispatch on a closed set of cases instead of raw status codes.
Timeouts and connection failures are not outcomes: they raise
``BrokerTimeout`` / ``BrokerUnreachable`` because the remote state is
unknown (timeout) or untouched (unreachable).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class SyncSuccess:
    """Broker completed the operation synchronously (200/201)."""

    body: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AsyncAccepted:
    """Broker accepted the request and will finish it later (202)."""

    operation: str | None = None
    state: str = 'in progress'
    retry_after: float | None = None


@dataclass(frozen=True, slots=True)
class Gone:
    """Resource is already gone at the broker (404/410)."""

    status_code: int


@dataclass(frozen=True, slots=True)
class BrokerError:
    """Broker answered with an error or an unusable response.

    ``ambiguous`` is True when the request reached the broker but the
    response does not tell whether it took effect (5xx, malformed body,
    unexpected 202). Those cases need orphan mitigation.
    """

    status_code: int
    description: str = ''
    error: str | None = None
    body: str = ''
    ambiguous: bool = False


@dataclass(frozen=True, slots=True)
class LastOperationReport:
    """Broker view of an async operation (last_operation endpoint)."""

    state: str
    description: str = ''
    retry_after: float | None = None


Outcome = Union[SyncSuccess, AsyncAccepted, Gone, BrokerError]
LastOperationOutcome = Union[LastOperationReport, Gone, BrokerError]
