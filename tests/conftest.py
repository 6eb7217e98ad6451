"""
Test configuration and fixtures.
"""
import os
import tempfile

# Settings are read at import time; configure the environment first
_TEST_DIR = tempfile.mkdtemp(prefix="newsletter-tests-")
os.environ.update({
    "DATABASE_URL": f"sqlite:///{_TEST_DIR}/app.db",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "WARNING",
    "ENABLE_EMBEDDED_WORKER": "false",
    "SENTRY_DSN": "",
    "OTEL_EXPORTER_OTLP_ENDPOINT": "",
    "EMAIL_BASE_URL": "https://email.test.acme.io",
    "EMAIL_SENDER": "newsletter@acme.io",
    "EMAIL_AUTHORIZATION_TOKEN": "test-token",
})

from typing import Dict, List, Optional, Tuple  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from newsletter.database import Base, build_engine, get_db  # noqa: E402
from newsletter.main import app  # noqa: E402
from newsletter.models.subscription import Subscription, SubscriptionStatus  # noqa: E402
from newsletter.services.email_client import EmailClient  # noqa: E402


class FakeEmailClient(EmailClient):
    """Records every send; ``failures`` maps a recipient to the exception to raise."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures = failures or {}
        self.sent: List[Tuple[str, str, str, str]] = []
        self.attempts: List[str] = []

    async def send_email(self, recipient: str, subject: str, html_content: str, text_content: str) -> None:
        self.attempts.append(recipient)
        if recipient in self.failures:
            raise self.failures[recipient]
        self.sent.append((recipient, subject, html_content, text_content))


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = build_engine(f"sqlite:///{tmp_path}/test.db")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    """Create test client with a database session per request."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_id():
    return str(uuid4())


@pytest.fixture
def auth_headers(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def add_subscriber(session_factory):
    """Insert a subscriber and return its email."""
    def _add(email: str, status: SubscriptionStatus = SubscriptionStatus.CONFIRMED, name: str = "Test Subscriber"):
        session = session_factory()
        try:
            session.add(Subscription(email=email, name=name, status=status.value))
            session.commit()
        finally:
            session.close()
        return email

    return _add


@pytest.fixture
def fake_email_client():
    return FakeEmailClient()
