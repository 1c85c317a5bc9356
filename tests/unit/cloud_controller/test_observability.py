"""Tests for structured logging and Prometheus metrics."""

from __future__ import annotations

import io
import json
import logging

import pytest
import structlog

from cloud_controller.app.observability import (
    configure_logging,
    metrics_text,
    request_context,
)
from cloud_controller.app.observability.metrics import SERVICE_INSTANCE_DELETES_TOTAL
from cloud_controller.app.settings import CloudControllerSettings


@pytest.fixture
def log_stream():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    stream = io.StringIO()
    configure_logging(CloudControllerSettings(log_level='DEBUG', log_format='json'), stream=stream)
    yield stream
    root.handlers[:] = handlers
    root.setLevel(level)


def _last_line(stream: io.StringIO) -> dict:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_stdlib_records_render_as_json_with_guids(log_stream):
    logging.getLogger('cloud_controller.test').info(
        'Deleted service instance %s',
        'si-1',
        extra={'service_instance_guid': 'si-1', 'unrelated': 'dropped'},
    )

    payload = _last_line(log_stream)
    assert payload['event'] == 'Deleted service instance si-1'
    assert payload['level'] == 'info'
    assert payload['logger'] == 'cloud_controller.test'
    assert payload['service_instance_guid'] == 'si-1'
    assert 'unrelated' not in payload


def test_request_context_tags_log_lines(log_stream):
    logger = logging.getLogger('cloud_controller.test')

    with request_context('req-abc'):
        logger.warning('inside')
    inside = _last_line(log_stream)
    logger.warning('outside')
    outside = _last_line(log_stream)

    assert inside['request_id'] == 'req-abc'
    assert 'request_id' not in outside


def test_request_context_without_id_binds_nothing():
    with request_context(None):
        assert 'request_id' not in structlog.contextvars.get_contextvars()


@pytest.mark.asyncio
async def test_delete_logs_carry_request_id(log_stream, make_deleter, make_instance):
    m1 = await make_instance('m1')

    await make_deleter(request_attrs={'request_id': 'req-42'}).delete([m1])

    lines = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    deleted = [line for line in lines if line['event'] == 'Deleted service instance m1']
    assert deleted
    assert deleted[0]['request_id'] == 'req-42'


@pytest.mark.asyncio
async def test_delete_results_are_counted(make_deleter, make_instance):
    before = SERVICE_INSTANCE_DELETES_TOTAL.labels(result='ok')._value.get()
    m1 = await make_instance('m1')

    await make_deleter().delete([m1])

    assert SERVICE_INSTANCE_DELETES_TOTAL.labels(result='ok')._value.get() == before + 1


def test_metrics_text_exposes_lifecycle_counters():
    body, content_type = metrics_text()

    assert b'cloud_controller_service_instance_deletes_total' in body
    assert content_type.startswith('text/plain')
