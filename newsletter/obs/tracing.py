"""
OpenTelemetry distributed tracing for the newsletter delivery service.
Provides tracing for FastAPI requests and delivery worker tasks.
"""
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from newsletter.config import settings


def setup_tracing(service_name: Optional[str] = None):
    """
    Configure OpenTelemetry tracing for the current process.

    Args:
        service_name: Overrides the API service name, e.g. for the worker process.

    Spans are exported only when OTEL_EXPORTER_OTLP_ENDPOINT is set; otherwise
    they are created and correlated but dropped.
    """
    current_service = service_name or getattr(settings, 'OTEL_SERVICE_NAME_API', 'newsletter-api')

    resource = Resource.create({
        "service.name": current_service,
        "service.version": "1.0.0",
        "deployment.environment": getattr(settings, 'ENVIRONMENT', 'development'),
    })

    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = getattr(settings, 'OTEL_EXPORTER_OTLP_ENDPOINT', None)
    if otlp_endpoint:
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    set_global_textmap(CompositePropagator([
        TraceContextTextMapPropagator(),
        B3MultiFormat(),
    ]))

    return tracer_provider


def instrument_fastapi(app):
    """Instrument FastAPI application with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)
    return app


def instrument_sqlalchemy(engine=None):
    """Instrument SQLAlchemy with OpenTelemetry."""
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    else:
        SQLAlchemyInstrumentor().instrument()
    return True


def get_tracer(name: str):
    """Get a tracer instance."""
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """Get the current trace ID from the active span."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.is_valid:
            return format(span_context.trace_id, '032x')
    return None


def add_span_attributes(attributes: Dict[str, Any]):
    """Add attributes to the current active span."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        for key, value in attributes.items():
            if value is not None:
                current_span.set_attribute(key, value)


def add_span_error(error: Exception, attributes: Optional[Dict[str, Any]] = None):
    """Add error information to the current active span."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        current_span.set_status(trace.Status(trace.StatusCode.ERROR, str(error)))
        current_span.set_attribute("error", True)
        current_span.set_attribute("error.type", type(error).__name__)
        current_span.set_attribute("error.message", str(error))

        if attributes:
            for key, value in attributes.items():
                current_span.set_attribute(key, value)


def trace_delivery_task(newsletter_issue_id: str, subscriber_email: str):
    """Start the span covering one delivery-queue task as the current span."""
    tracer = get_tracer("newsletter.delivery")
    return tracer.start_as_current_span(
        "issue_delivery.try_execute_task",
        attributes={
            "newsletter_issue_id": newsletter_issue_id,
            "subscriber_email": subscriber_email,
        },
    )
