"""Prometheus metric helpers."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "imagemin_requests_total",
    "HTTP requests processed by the API",
    ("method", "path", "status"),
)

REQUEST_LATENCY = Histogram(
    "imagemin_request_latency_seconds",
    "Latency of HTTP requests processed by the API",
    ("method", "path"),
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

TASK_RESULTS = Counter(
    "imagemin_task_results_total",
    "Background worker task outcomes",
    ("task", "status"),
)

WORKER_TICKS = Counter(
    "imagemin_worker_ticks_total",
    "Queue worker invocations grouped by outcome",
    ("outcome",),
)

JOB_TRANSITIONS = Counter(
    "imagemin_job_transitions_total",
    "Optimization job status transitions",
    ("status",),
)

API_CALLS = Counter(
    "imagemin_api_calls_total",
    "Requests sent to the image minification service",
    ("operation", "outcome"),
)


def record_request(method: str, path: str, status_code: int, duration: float) -> None:
    """Record counters and histograms for a processed HTTP request."""

    REQUEST_COUNT.labels(method, path, str(status_code)).inc()
    REQUEST_LATENCY.labels(method, path).observe(duration)


def record_task_result(task_name: str, status: str) -> None:
    """Increment the task results counter for the provided status."""

    TASK_RESULTS.labels(task_name, status).inc()


def record_tick(outcome: str) -> None:
    WORKER_TICKS.labels(outcome).inc()


def record_transition(status: str) -> None:
    JOB_TRANSITIONS.labels(status).inc()


def record_api_call(operation: str, outcome: str) -> None:
    API_CALLS.labels(operation, outcome).inc()
