"""
Sentry error tracking and performance monitoring integration.
Captures exceptions from the API and the delivery worker.
"""
import re

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from newsletter.config import settings
from newsletter.obs.logging import get_logger

logger = get_logger(__name__)


def setup_sentry():
    """
    Initialize Sentry SDK for error tracking and performance monitoring.

    Does nothing when SENTRY_DSN is not configured.
    """
    if not settings.SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured, skipping Sentry initialization")
        return

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(
                    transaction_style="endpoint",
                    failed_request_status_codes={500, 501, 502, 503, 504},
                ),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            before_send=before_send_event,
            release=f"newsletter-delivery@{settings.ENVIRONMENT}",
            send_default_pii=False,  # Subscriber addresses are PII
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )

        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {str(e)}")


def before_send_event(event, hint):
    """Redact PII from exception messages before they leave the process."""
    if settings.ENVIRONMENT == "development" and event.get("level") != "error":
        return None

    if "exception" in event:
        for exception in event["exception"].get("values", []):
            if exception.get("value"):
                exception["value"] = redact_pii(exception["value"])

    return event


def redact_pii(text: str) -> str:
    """Replace email addresses and provider tokens in ``text``."""
    text = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[EMAIL_REDACTED]', text)
    text = re.sub(r'(X-Postmark-Server-Token[:=]\s*)\S+', r'\1[REDACTED]', text)
    return text


def capture_exception(exception: Exception, extra_context: dict = None):
    """
    Manually capture an exception with additional context.

    Args:
        exception: The exception to capture
        extra_context: Additional context dict (e.g., {"newsletter_issue_id": "..."})
    """
    with sentry_sdk.new_scope() as scope:
        if extra_context:
            for key, value in extra_context.items():
                scope.set_extra(key, value)

        sentry_sdk.capture_exception(exception)
