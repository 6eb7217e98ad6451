"""
Observability middleware for FastAPI.
Request tracing, logging and metrics. Publish requests are tagged with
their idempotency outcome (started, replayed or in_flight).
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from newsletter.obs.logging import extract_trace_id, get_logger, log_error, log_request
from newsletter.obs.metrics import record_http_request
from newsletter.obs.tracing import add_span_attributes, add_span_error, get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _idempotency_fields(request: Request) -> dict:
    """Idempotency outcome recorded by the publish route, if any."""
    fields = {}
    outcome = getattr(request.state, "idempotency", None)
    if outcome:
        fields["idempotency"] = outcome
        fields["idempotency_key"] = getattr(request.state, "idempotency_key", None)
    return fields


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Middleware for request observability (logging, tracing, metrics)."""

    def __init__(self, app, exclude_paths: list = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or ['/health', '/metrics', '/docs', '/openapi.json']

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with observability."""
        start_time = time.time()

        if any(request.url.path.startswith(path) for path in self.exclude_paths):
            return await call_next(request)

        trace_id = extract_trace_id(request)
        request.state.trace_id = trace_id

        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "trace_id": trace_id,
            }
        ):
            try:
                if request.client:
                    add_span_attributes({"http.client_ip": request.client.host})

                response = await call_next(request)

                duration_ms = (time.time() - start_time) * 1000

                add_span_attributes({"http.status_code": response.status_code})
                idempotency_fields = _idempotency_fields(request)
                if idempotency_fields:
                    add_span_attributes({f"newsletter.{name}": value for name, value in idempotency_fields.items()})

                # Correlation header lives outside the replayed idempotent payload
                response.headers["X-Request-Id"] = trace_id

                record_http_request(
                    route=request.url.path,
                    method=request.method,
                    status_code=response.status_code,
                    duration_ms=duration_ms
                )

                log_request(
                    logger=logger,
                    request=request,
                    status_code=response.status_code,
                    latency_ms=duration_ms,
                    trace_id=trace_id,
                    user_id=getattr(request.state, 'user_id', None),
                    **idempotency_fields,
                )

                return response

            except Exception as e:
                duration_ms = (time.time() - start_time) * 1000

                add_span_error(e, {
                    "error.route": request.url.path,
                    "error.method": request.method,
                })

                record_http_request(
                    route=request.url.path,
                    method=request.method,
                    status_code=500,
                    duration_ms=duration_ms
                )

                log_error(
                    logger=logger,
                    error=e,
                    trace_id=trace_id,
                    user_id=getattr(request.state, 'user_id', None),
                    route=request.url.path,
                    method=request.method,
                )

                raise
