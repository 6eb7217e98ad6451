"""
Prometheus metrics for the newsletter delivery service.
Provides metrics for HTTP requests, idempotent publishing and issue delivery.
"""
import re
import time
from typing import Optional

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['route', 'method', 'status']
)

http_request_duration_ms = Histogram(
    'http_request_duration_ms',
    'HTTP request duration in milliseconds',
    ['route', 'method'],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
)

# Idempotency Metrics
idempotency_outcomes_total = Counter(
    'idempotency_outcomes_total',
    'Outcome of idempotency claims (started, replayed, in_flight)',
    ['outcome']
)

idempotency_records_purged_total = Counter(
    'idempotency_records_purged_total',
    'Total number of expired idempotency records purged'
)

# Delivery Worker Metrics
issue_delivery_total = Counter(
    'issue_delivery_total',
    'Outcome of delivery-queue tasks (sent, invalid_address, retained, dropped, empty)',
    ['outcome']
)

email_send_duration_ms = Histogram(
    'email_send_duration_ms',
    'Email provider request duration in milliseconds',
    ['status'],
    buckets=(10, 50, 100, 250, 500, 1000, 2000, 5000, 10000, 30000)
)

issue_delivery_queue_depth = Gauge(
    'issue_delivery_queue_depth',
    'Number of pending rows in the issue delivery queue'
)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self):
        self.start_time = time.time()

    def record_http_request(self, route: str, method: str, status_code: int, duration_ms: float):
        """Record HTTP request metrics."""
        normalized_route = self._normalize_route(route)

        http_requests_total.labels(
            route=normalized_route,
            method=method,
            status=str(status_code)
        ).inc()

        http_request_duration_ms.labels(
            route=normalized_route,
            method=method
        ).observe(duration_ms)

    def record_idempotency_outcome(self, outcome: str):
        idempotency_outcomes_total.labels(outcome=outcome).inc()

    def record_idempotency_purged(self, count: int = 1):
        idempotency_records_purged_total.inc(count)

    def record_delivery(self, outcome: str):
        issue_delivery_total.labels(outcome=outcome).inc()

    def record_email_send(self, status: str, latency_ms: float):
        email_send_duration_ms.labels(status=status).observe(latency_ms)

    def set_queue_depth(self, depth: int):
        issue_delivery_queue_depth.set(depth)

    def _normalize_route(self, route: str) -> str:
        """Normalize route for metrics by replacing dynamic segments."""
        route = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', route)
        route = re.sub(r'/\d+', '/{id}', route)
        return route

    def get_metrics_response(self) -> Response:
        """Get Prometheus metrics in text format."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


# Helper functions for easy metric recording
def record_http_request(route: str, method: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    metrics.record_http_request(route, method, status_code, duration_ms)


def record_idempotency_outcome(outcome: str):
    """Record whether a claim started work, replayed a response or hit an in-flight key."""
    metrics.record_idempotency_outcome(outcome)


def record_idempotency_purged(count: int = 1):
    """Record idempotency record purge metrics."""
    metrics.record_idempotency_purged(count)


def record_delivery(outcome: str):
    """Record the outcome of one delivery-queue task."""
    metrics.record_delivery(outcome)


def record_email_send(status: str, latency_ms: Optional[float] = None):
    """Record an email provider call."""
    metrics.record_email_send(status, latency_ms or 0.0)


def set_queue_depth(depth: int):
    """Set the delivery queue depth gauge."""
    metrics.set_queue_depth(depth)
