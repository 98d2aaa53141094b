"""Prometheus metrics for Kamino.

Exposes durations and error counts for pod lifecycle operations and the
size of the port group allocation table. The /metrics endpoint serves
these in Prometheus exposition format.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

pod_operation_duration = Histogram(
    "kamino_pod_operation_seconds",
    "Duration of pod lifecycle operations",
    ["operation", "status"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1200, float("inf")),
)

pod_operation_errors = Counter(
    "kamino_pod_operation_errors_total",
    "Total pod operation errors",
    ["operation", "category"],
)

port_groups_reserved = Gauge(
    "kamino_port_groups_reserved",
    "Port group numbers currently reserved or in use",
)


@contextmanager
def track_operation(operation: str) -> Iterator[None]:
    """Record duration and outcome of one pod operation."""
    start = time.monotonic()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "error"
        category = getattr(getattr(e, "category", None), "value", "unknown")
        pod_operation_errors.labels(operation=operation, category=category).inc()
        raise
    finally:
        pod_operation_duration.labels(operation=operation, status=status).observe(
            time.monotonic() - start
        )


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
