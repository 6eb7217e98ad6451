"""
Structured logging configuration for the newsletter delivery service.
Provides JSON-formatted logs with correlation IDs and PII redaction.
"""
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request

from newsletter.config import settings


class PIIRedactor:
    """Redacts PII from log messages when enabled."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.email_pattern_compiled = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')

    def redact(self, message: str) -> str:
        """Redact PII from a log message."""
        if not self.enabled:
            return message
        return self.email_pattern_compiled.sub('[REDACTED_EMAIL]', message)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging with PII redaction."""

    # Optional record attributes copied into the log entry when present
    OPTIONAL_FIELDS = [
        'route', 'method', 'status', 'latency_ms', 'trace_id', 'user_id', 'ip',
        'idempotency_key', 'idempotency', 'newsletter_issue_id', 'subscriber_email',
        'delivery_outcome', 'n_retries', 'task_name', 'error_type', 'stack_trace',
    ]

    # Optional fields that may carry PII
    REDACTED_FIELDS = {'subscriber_email'}

    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redactor = PIIRedactor(redact_pii)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with structured fields."""
        log_entry = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": getattr(record, 'service', 'api'),
            "message": self.redactor.redact(record.getMessage()),
            "logger": record.name,
        }

        for field in self.OPTIONAL_FIELDS:
            if hasattr(record, field):
                value = getattr(record, field)
                if value is None:
                    continue
                if field in self.REDACTED_FIELDS:
                    value = self.redactor.redact(str(value))
                log_entry[field] = value

        if record.exc_info:
            log_entry["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_entry["stack_trace"] = self.redactor.redact(self.formatException(record.exc_info))

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging():
    """Configure structured logging for the application."""
    log_level = getattr(settings, 'LOG_LEVEL', 'INFO').upper()
    redact_pii = getattr(settings, 'OBS_REDACT_PII', True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(StructuredFormatter(redact_pii))
    root_logger.addHandler(console_handler)

    # Configure specific loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


def log_request(
    logger: logging.Logger,
    request: Request,
    status_code: int,
    latency_ms: float,
    trace_id: str,
    user_id: Optional[str] = None,
    **kwargs
):
    """Log a request with structured fields."""
    extra = {
        'service': 'api',
        'route': request.url.path,
        'method': request.method,
        'status': status_code,
        'latency_ms': round(latency_ms, 2),
        'trace_id': trace_id,
        'ip': request.client.host if request.client else None,
    }

    if user_id:
        extra['user_id'] = user_id

    extra.update(kwargs)

    # Choose log level based on status code
    if status_code >= 500:
        logger.error("Request completed with server error", extra=extra)
    elif status_code >= 400:
        logger.warning("Request completed with client error", extra=extra)
    else:
        logger.info("Request completed successfully", extra=extra)


def log_delivery(
    logger: logging.Logger,
    outcome: str,
    newsletter_issue_id: Optional[str] = None,
    subscriber_email: Optional[str] = None,
    error: Optional[Exception] = None,
    **kwargs
):
    """Log the outcome of one delivery-queue task with structured fields."""
    extra = {
        'service': 'worker',
        'task_name': 'issue_delivery',
        'delivery_outcome': outcome,
        'newsletter_issue_id': newsletter_issue_id,
        'subscriber_email': subscriber_email,
    }
    if error is not None:
        extra['error_type'] = type(error).__name__

    extra.update(kwargs)

    if error is not None:
        logger.error(f"Delivery {outcome}: {error}", extra=extra)
    else:
        logger.info(f"Delivery {outcome}", extra=extra)


def log_error(
    logger: logging.Logger,
    error: Exception,
    trace_id: Optional[str],
    user_id: Optional[str] = None,
    **kwargs
):
    """Log an error with structured fields and stack trace."""
    extra = {
        'service': 'api',
        'trace_id': trace_id,
        'error_type': type(error).__name__,
    }

    if user_id:
        extra['user_id'] = user_id

    extra.update(kwargs)

    logger.error(f"Error occurred: {str(error)}", exc_info=error, extra=extra)


def generate_trace_id() -> str:
    """Generate a new trace ID."""
    return str(uuid.uuid4())


def extract_trace_id(request: Request) -> str:
    """Extract trace ID from request headers or generate new one."""
    request_id = request.headers.get("X-Request-Id")
    if request_id:
        return request_id

    # traceparent format: 00-<trace_id>-<span_id>-<flags>
    traceparent = request.headers.get("traceparent")
    if traceparent:
        parts = traceparent.split("-")
        if len(parts) >= 2:
            return parts[1]

    return generate_trace_id()
