"""
Prometheus metrics endpoint.
"""
from fastapi import APIRouter, Response

from newsletter.obs.metrics import metrics

router = APIRouter(tags=["Observability"])


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Exposes application metrics in Prometheus format.

    **Metrics Exposed**:
    - Request count and latency by route and status code
    - Idempotency outcomes (started, replayed, in_flight)
    - Delivery outcomes (sent, invalid_address, retained, dropped, empty)
    - Email provider latency
    - Delivery queue depth

    **No Authentication Required**: Metrics endpoint is public (no PII)
    """,
)
async def prometheus_metrics() -> Response:
    return metrics.get_metrics_response()
