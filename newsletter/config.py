"""
Centralized configuration management for the newsletter delivery service.
Loads and validates all environment variables.
"""
import os
from typing import Optional


IN_FLIGHT_POLICIES = ("error", "conflict", "wait")
TRANSIENT_FAILURE_POLICIES = ("retain", "drop")


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        # Database URL with fallback for development
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./newsletter_dev.db")
        self.DEBUG_SQL = os.getenv("DEBUG_SQL", "false").lower() in ("true", "1", "yes")

        # Environment
        self.ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

        # Email delivery (Postmark-compatible API)
        self.EMAIL_BASE_URL = os.getenv("EMAIL_BASE_URL", "https://api.postmarkapp.com")
        self.EMAIL_SENDER = os.getenv("EMAIL_SENDER", "newsletter@example.com")
        self.EMAIL_AUTHORIZATION_TOKEN = os.getenv("EMAIL_AUTHORIZATION_TOKEN", "")
        self.EMAIL_CLIENT_TIMEOUT_MS = int(os.getenv("EMAIL_CLIENT_TIMEOUT_MS", "10000"))

        # Idempotency Configuration
        self.IDEMPOTENCY_IN_FLIGHT_POLICY = os.getenv("IDEMPOTENCY_IN_FLIGHT_POLICY", "error").lower()
        self.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS = float(os.getenv("IDEMPOTENCY_WAIT_TIMEOUT_SECONDS", "5"))
        self.IDEMPOTENCY_RETRY_AFTER_SECONDS = int(os.getenv("IDEMPOTENCY_RETRY_AFTER_SECONDS", "1"))
        self.IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "48"))
        self.IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS = float(os.getenv("IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS", "3600"))

        # Delivery worker
        self.DELIVERY_TRANSIENT_FAILURE_POLICY = os.getenv("DELIVERY_TRANSIENT_FAILURE_POLICY", "retain").lower()
        self.DELIVERY_RETRY_BASE_DELAY_SECONDS = float(os.getenv("DELIVERY_RETRY_BASE_DELAY_SECONDS", "5"))
        self.DELIVERY_RETRY_MAX_DELAY_SECONDS = float(os.getenv("DELIVERY_RETRY_MAX_DELAY_SECONDS", "3600"))
        self.WORKER_EMPTY_QUEUE_DELAY_SECONDS = float(os.getenv("WORKER_EMPTY_QUEUE_DELAY_SECONDS", "10"))
        self.WORKER_ERROR_DELAY_SECONDS = float(os.getenv("WORKER_ERROR_DELAY_SECONDS", "1"))
        self.ENABLE_EMBEDDED_WORKER = os.getenv("ENABLE_EMBEDDED_WORKER", "false").lower() in ("true", "1", "yes")

        # Sentry Error Tracking
        self.SENTRY_DSN = os.getenv("SENTRY_DSN", "")
        self.SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

        # Observability Configuration
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.OBS_REDACT_PII = os.getenv("OBS_REDACT_PII", "true").lower() in ("true", "1", "yes")
        self.OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
        self.OTEL_SERVICE_NAME_API = os.getenv("OTEL_SERVICE_NAME_API", "newsletter-api")
        self.OTEL_SERVICE_NAME_WORKER = os.getenv("OTEL_SERVICE_NAME_WORKER", "newsletter-worker")

        # Validate required settings
        self._validate_settings()

    def _validate_settings(self):
        """Validate settings with environment-aware relaxations."""
        if self.IDEMPOTENCY_IN_FLIGHT_POLICY not in IN_FLIGHT_POLICIES:
            raise ValueError(
                f"IDEMPOTENCY_IN_FLIGHT_POLICY must be one of {', '.join(IN_FLIGHT_POLICIES)}, "
                f"got {self.IDEMPOTENCY_IN_FLIGHT_POLICY!r}"
            )
        if self.DELIVERY_TRANSIENT_FAILURE_POLICY not in TRANSIENT_FAILURE_POLICIES:
            raise ValueError(
                f"DELIVERY_TRANSIENT_FAILURE_POLICY must be one of {', '.join(TRANSIENT_FAILURE_POLICIES)}, "
                f"got {self.DELIVERY_TRANSIENT_FAILURE_POLICY!r}"
            )
        if self.EMAIL_CLIENT_TIMEOUT_MS <= 0:
            raise ValueError("EMAIL_CLIENT_TIMEOUT_MS must be positive")

        # In production enforce the email provider credentials
        if self.is_production:
            required_settings = [
                ('EMAIL_AUTHORIZATION_TOKEN', self.EMAIL_AUTHORIZATION_TOKEN),
                ('EMAIL_SENDER', self.EMAIL_SENDER),
            ]
            for name, value in required_settings:
                if value in ['CHANGE_ME', f'your_{name.lower()}', '']:
                    raise ValueError(f'{name} must be set to a real value, not a placeholder')

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def email_timeout_seconds(self) -> float:
        return self.EMAIL_CLIENT_TIMEOUT_MS / 1000.0

    def database_url(self) -> Optional[str]:
        """Database URL normalized for SQLAlchemy."""
        url = self.DATABASE_URL
        if url and url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url


# Global settings instance
settings = Settings()
