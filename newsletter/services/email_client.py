"""
Email delivery client for a Postmark-compatible HTTP API.

The client makes exactly one attempt per call; retry policy belongs to the
delivery worker.
"""
import time
from typing import Optional

import httpx

from newsletter.config import settings
from newsletter.obs.logging import get_logger
from newsletter.obs.metrics import record_email_send

logger = get_logger(__name__)


class EmailClientError(Exception):
    """Base exception for email client errors."""
    pass


class EmailTransientError(EmailClientError):
    """Timeouts, transport failures, 5xx and 429 responses. A retry may succeed."""
    pass


class EmailPermanentError(EmailClientError):
    """The provider rejected the request (4xx other than 429). Retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmailClient:
    """Capability used by the delivery worker to send one email."""

    async def send_email(self, recipient: str, subject: str, html_content: str, text_content: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class PostmarkEmailClient(EmailClient):
    """
    Sends emails through the ``POST /email`` endpoint.

    Args:
        base_url: Provider base URL, e.g. ``https://api.postmarkapp.com``.
        sender: Address used in the ``From`` field.
        authorization_token: Server token sent as ``X-Postmark-Server-Token``.
        timeout: Per-request timeout in seconds.
        http_client: Optional pre-built ``httpx.AsyncClient`` (tests inject a
            client backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        sender: str,
        authorization_token: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.authorization_token = authorization_token
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

        if not self.base_url.startswith("https://"):
            if settings.is_production:
                logger.error(f"EMAIL_BASE_URL must use HTTPS in production, got: {self.base_url}")
            else:
                logger.warning(f"EMAIL_BASE_URL should use HTTPS, got: {self.base_url}")

    async def send_email(self, recipient: str, subject: str, html_content: str, text_content: str) -> None:
        """
        Send one email.

        Raises:
            EmailTransientError: Timeout, transport error, 5xx or 429.
            EmailPermanentError: Any other non-2xx response.
        """
        url = f"{self.base_url}/email"
        payload = {
            "From": self.sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }
        headers = {"X-Postmark-Server-Token": self.authorization_token}

        start_time = time.time()
        try:
            response = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            record_email_send("timeout", (time.time() - start_time) * 1000)
            raise EmailTransientError(f"Email provider timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            record_email_send("transport_error", (time.time() - start_time) * 1000)
            raise EmailTransientError(f"Email provider unreachable: {e}") from e

        latency_ms = (time.time() - start_time) * 1000
        record_email_send(str(response.status_code), latency_ms)

        if response.is_success:
            logger.debug(f"Email provider accepted message (status={response.status_code}, latency={latency_ms:.2f}ms)")
            return

        if response.status_code >= 500 or response.status_code == 429:
            raise EmailTransientError(f"Email provider returned {response.status_code}")

        raise EmailPermanentError(
            f"Email provider rejected message with {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Get or create the email client singleton instance."""
    global _email_client
    if _email_client is None:
        _email_client = PostmarkEmailClient(
            base_url=settings.EMAIL_BASE_URL,
            sender=settings.EMAIL_SENDER,
            authorization_token=settings.EMAIL_AUTHORIZATION_TOKEN,
            timeout=settings.email_timeout_seconds,
        )
    return _email_client
