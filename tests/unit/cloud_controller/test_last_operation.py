"""Tests for the last-operation state machine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cloud_controller.app.last_operation import (
    FAILED,
    IN_PROGRESS,
    SUCCEEDED,
    InvalidOperationTransition,
    LastOperation,
    apply_broker_state,
    fail_operation,
    refresh_in_progress,
    start_operation,
    succeed_operation,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=5)


def test_start_operation_is_in_progress():
    op = start_operation('delete', now=NOW, broker_operation='op-1')

    assert op.type == 'delete'
    assert op.state == IN_PROGRESS
    assert op.in_progress
    assert not op.terminal
    assert op.broker_operation == 'op-1'
    assert op.created_at == op.updated_at == NOW


def test_start_operation_rejects_unknown_type():
    with pytest.raises(ValueError, match='unknown operation type'):
        start_operation('rename', now=NOW)


def test_naive_timestamps_are_rejected():
    with pytest.raises(ValueError, match='timezone-aware'):
        start_operation('create', now=datetime(2024, 1, 1))


def test_succeed_keeps_type_and_created_at():
    op = succeed_operation(start_operation('create', now=NOW), now=LATER)

    assert op.type == 'create'
    assert op.state == SUCCEEDED
    assert op.created_at == NOW
    assert op.updated_at == LATER


def test_fail_records_description():
    op = fail_operation(start_operation('delete', now=NOW), now=LATER, description='broker said no')

    assert op.state == FAILED
    assert op.description == 'broker said no'
    assert op.terminal


@pytest.mark.parametrize('state', [SUCCEEDED, FAILED])
def test_terminal_states_cannot_transition(state):
    op = LastOperation(type='delete', state=state)

    with pytest.raises(InvalidOperationTransition):
        succeed_operation(op, now=NOW)
    with pytest.raises(InvalidOperationTransition):
        refresh_in_progress(op, now=NOW)


def test_new_operation_replaces_terminal_state():
    failed = LastOperation(type='delete', state=FAILED, description='old')

    retried = start_operation('delete', now=LATER)

    assert failed.terminal
    assert retried.in_progress
    assert retried.description == ''


def test_refresh_updates_description_only_when_given():
    op = start_operation('update', now=NOW, description='queued')

    unchanged = refresh_in_progress(op, now=LATER)
    changed = refresh_in_progress(op, now=LATER, description='50%', broker_operation='op-2')

    assert unchanged.description == 'queued'
    assert changed.description == '50%'
    assert changed.broker_operation == 'op-2'
    assert changed.state == IN_PROGRESS


@pytest.mark.parametrize('state', [IN_PROGRESS, SUCCEEDED, FAILED])
def test_apply_broker_state_maps_known_states(state):
    op = apply_broker_state(start_operation('delete', now=NOW), state, now=LATER)

    assert op.state == state


def test_apply_broker_state_rejects_unknown_state():
    with pytest.raises(ValueError, match='unknown broker operation state'):
        apply_broker_state(start_operation('delete', now=NOW), 'exploded', now=LATER)
