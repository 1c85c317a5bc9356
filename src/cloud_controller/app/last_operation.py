"""Last-operation state machine for service instances and bindings.

Tracks the async broker lifecycle as ``type x state``:

  type:  create | update | delete
  state: in progress -> succeeded
         in progress -> failed
         in progress -> in progress   (poll observed no change)

Terminal states are never left in place: a new user request replaces the
record with a fresh ``in progress`` operation via ``start_operation``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType

IN_PROGRESS = 'in progress'
SUCCEEDED = 'succeeded'
FAILED = 'failed'

OPERATION_TYPES = frozenset({'create', 'update', 'delete'})
OPERATION_STATES = frozenset({IN_PROGRESS, SUCCEEDED, FAILED})
TERMINAL_STATES = frozenset({SUCCEEDED, FAILED})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        IN_PROGRESS: frozenset({IN_PROGRESS, SUCCEEDED, FAILED}),
        SUCCEEDED: frozenset(),
        FAILED: frozenset(),
    }
)


@dataclass(frozen=True, slots=True)
class LastOperation:
    """Snapshot of the most recent broker operation for one resource."""

    type: str
    state: str = IN_PROGRESS
    description: str = ''
    broker_operation: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def in_progress(self) -> bool:
        return self.state == IN_PROGRESS

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class InvalidOperationTransition(ValueError):
    """Raised for transitions the state machine does not allow."""

    def __init__(self, op_type: str, from_state: str, to_state: str) -> None:
        self.op_type = op_type
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid {op_type} operation transition: '
            f'{from_state!r} -> {to_state!r}'
        )


def start_operation(
    op_type: str,
    *,
    now: datetime,
    description: str = '',
    broker_operation: str | None = None,
) -> LastOperation:
    """Begin a fresh operation, replacing whatever came before."""
    _require_aware_datetime(now)
    if op_type not in OPERATION_TYPES:
        raise ValueError(f'unknown operation type: {op_type!r}')
    return LastOperation(
        type=op_type,
        state=IN_PROGRESS,
        description=description,
        broker_operation=broker_operation,
        created_at=now,
        updated_at=now,
    )


def succeed_operation(
    op: LastOperation,
    *,
    now: datetime,
    description: str | None = None,
) -> LastOperation:
    return _transition(op, to_state=SUCCEEDED, now=now, description=description)


def fail_operation(
    op: LastOperation,
    *,
    now: datetime,
    description: str,
) -> LastOperation:
    return _transition(op, to_state=FAILED, now=now, description=description)


def refresh_in_progress(
    op: LastOperation,
    *,
    now: datetime,
    description: str | None = None,
    broker_operation: str | None = None,
) -> LastOperation:
    """Record that the operation is still running, keeping its type."""
    updated = _transition(op, to_state=IN_PROGRESS, now=now, description=description)
    if broker_operation is not None:
        updated = replace(updated, broker_operation=broker_operation)
    return updated


def apply_broker_state(
    op: LastOperation,
    state: str,
    *,
    now: datetime,
    description: str | None = None,
) -> LastOperation:
    """Map a broker-reported ``state`` onto the matching transition."""
    if state == SUCCEEDED:
        return succeed_operation(op, now=now, description=description)
    if state == FAILED:
        return fail_operation(op, now=now, description=description or '')
    if state == IN_PROGRESS:
        return refresh_in_progress(op, now=now, description=description)
    raise ValueError(f'unknown broker operation state: {state!r}')


def _transition(
    op: LastOperation,
    *,
    to_state: str,
    now: datetime,
    description: str | None,
) -> LastOperation:
    _require_aware_datetime(now)
    allowed = ALLOWED_TRANSITIONS.get(op.state, frozenset())
    if to_state not in allowed:
        raise InvalidOperationTransition(op.type, op.state, to_state)

    return replace(
        op,
        state=to_state,
        description=op.description if description is None else description,
        updated_at=now,
    )


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
