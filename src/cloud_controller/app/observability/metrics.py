"""Prometheus metrics for broker calls and service-instance lifecycle.

Metric naming follows Prometheus conventions so dashboards and alert rules
can reference them without query translation.

Usage::

    from cloud_controller.app.observability.metrics import BROKER_REQUESTS_TOTAL

    BROKER_REQUESTS_TOTAL.labels(operation="deprovision", outcome="sync_success").inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# Broker client
# ---------------------------------------------------------------------------

BROKER_REQUESTS_TOTAL = Counter(
    "cloud_controller_broker_requests_total",
    "Broker requests by operation and normalized outcome.",
    labelnames=["operation", "outcome"],
    registry=REGISTRY,
)

BROKER_REQUEST_DURATION_SECONDS = Histogram(
    "cloud_controller_broker_request_duration_seconds",
    "Broker request latency in seconds.",
    labelnames=["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

SERVICE_INSTANCE_DELETES_TOTAL = Counter(
    "cloud_controller_service_instance_deletes_total",
    "Per-instance results of batch service-instance deletion.",
    labelnames=["result"],
    registry=REGISTRY,
)

LAST_OPERATION_POLLS_TOTAL = Counter(
    "cloud_controller_last_operation_polls_total",
    "Last-operation polls by observed broker state.",
    labelnames=["resource", "state"],
    registry=REGISTRY,
)

ORPHAN_MITIGATIONS_TOTAL = Counter(
    "cloud_controller_orphan_mitigations_total",
    "Orphan mitigation attempts by action and result.",
    labelnames=["action", "result"],
    registry=REGISTRY,
)

AUDIT_EVENTS_EMITTED = Counter(
    "cloud_controller_audit_events_total",
    "Audit events emitted by action type.",
    labelnames=["action"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
