"""
Tests for the issue delivery worker.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from newsletter.config import settings
from newsletter.core.exceptions import StoreError
from newsletter.models.issue_delivery_queue import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.services.email_client import EmailPermanentError, EmailTransientError, PostmarkEmailClient
from newsletter.services.issue_delivery_worker import (
    ExecutionOutcome,
    IssueDeliveryWorker,
    retry_delay_seconds,
    try_execute_task,
    worker_loop,
)


def _seed_issue(session_factory, emails, title="Issue #1"):
    """Insert an issue and queue it for ``emails``, due in the given order."""
    issue_id = str(uuid4())
    due = datetime.now(timezone.utc) - timedelta(minutes=1)
    session = session_factory()
    session.add(NewsletterIssue(
        newsletter_issue_id=issue_id,
        title=title,
        text_content="Plain body",
        html_content="<p>HTML body</p>",
        published_at=datetime.now(timezone.utc),
    ))
    session.flush()
    for offset, email in enumerate(emails):
        session.add(IssueDeliveryTask(
            newsletter_issue_id=issue_id,
            subscriber_email=email,
            execute_after=due + timedelta(seconds=offset),
        ))
        session.flush()
    session.commit()
    session.close()
    return issue_id


def _queued(session_factory):
    session = session_factory()
    try:
        return session.execute(
            select(IssueDeliveryTask.newsletter_issue_id, IssueDeliveryTask.subscriber_email)
        ).all()
    finally:
        session.close()


async def _single_pass(session_factory, email_client, policy, max_iterations=10):
    """Run iterations until no due task is left."""
    outcomes = []
    for _ in range(max_iterations):
        outcome = await try_execute_task(session_factory, email_client, policy)
        outcomes.append(outcome)
        if outcome == ExecutionOutcome.EMPTY_QUEUE:
            break
    return outcomes


def _make_due(session_factory):
    session = session_factory()
    session.execute(
        update(IssueDeliveryTask).values(execute_after=datetime.now(timezone.utc) - timedelta(seconds=1))
    )
    session.commit()
    session.close()


def _retries(session_factory):
    session = session_factory()
    try:
        return dict(session.execute(
            select(IssueDeliveryTask.subscriber_email, IssueDeliveryTask.n_retries)
        ).all())
    finally:
        session.close()


def _provider(failing_recipient, status_code=500):
    """Postmark client whose provider fails for one recipient."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        requests.append(payload["To"])
        if payload["To"] == failing_recipient:
            return httpx.Response(status_code, json={"Message": "provider failure"})
        return httpx.Response(200, json={"MessageID": str(uuid4())})

    client = PostmarkEmailClient(
        base_url="https://email.test.acme.io",
        sender="newsletter@acme.io",
        authorization_token="test-token",
        timeout=1.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return client, requests


class TestTryExecuteTask:
    """Test a single worker iteration."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, session_factory, fake_email_client):
        outcome = await try_execute_task(session_factory, fake_email_client)
        assert outcome == ExecutionOutcome.EMPTY_QUEUE
        assert fake_email_client.attempts == []

    @pytest.mark.asyncio
    async def test_successful_send_deletes_task(self, session_factory, fake_email_client):
        _seed_issue(session_factory, ["ada@acme.io"], title="Hello")

        outcome = await try_execute_task(session_factory, fake_email_client)

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        assert fake_email_client.sent == [("ada@acme.io", "Hello", "<p>HTML body</p>", "Plain body")]
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_invalid_address_is_dropped_without_sending(self, session_factory, fake_email_client):
        _seed_issue(session_factory, ["definitely-not-an-email"])

        outcome = await try_execute_task(session_factory, fake_email_client, "retain")

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        assert fake_email_client.attempts == []
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_permanent_rejection_is_dropped_under_retain(self, session_factory, fake_email_client):
        fake_email_client.failures["ada@acme.io"] = EmailPermanentError("422", status_code=422)
        _seed_issue(session_factory, ["ada@acme.io"])

        outcome = await try_execute_task(session_factory, fake_email_client, "retain")

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retained(self, session_factory, fake_email_client):
        fake_email_client.failures["ada@acme.io"] = EmailTransientError("timeout")
        issue_id = _seed_issue(session_factory, ["ada@acme.io"])

        outcome = await try_execute_task(session_factory, fake_email_client, "retain")

        assert outcome == ExecutionOutcome.TASK_RETAINED
        assert _queued(session_factory) == [(issue_id, "ada@acme.io")]

    @pytest.mark.asyncio
    async def test_transient_failure_is_dropped_under_drop(self, session_factory, fake_email_client):
        fake_email_client.failures["ada@acme.io"] = EmailTransientError("timeout")
        _seed_issue(session_factory, ["ada@acme.io"])

        outcome = await try_execute_task(session_factory, fake_email_client, "drop")

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_task_for_missing_issue_is_dropped(self, session_factory, fake_email_client):
        session = session_factory()
        session.add(IssueDeliveryTask(newsletter_issue_id=str(uuid4()), subscriber_email="ada@acme.io"))
        session.commit()
        session.close()

        outcome = await try_execute_task(session_factory, fake_email_client)

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        assert fake_email_client.attempts == []
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_store_failure_propagates_and_keeps_task(self, session_factory, fake_email_client):
        issue_id = _seed_issue(session_factory, ["ada@acme.io"])
        session = session_factory()

        with patch.object(session, "execute", side_effect=OperationalError("SELECT", {}, Exception("down"))):
            with pytest.raises(StoreError):
                await try_execute_task(lambda: session, fake_email_client)

        assert fake_email_client.attempts == []
        assert _queued(session_factory) == [(issue_id, "ada@acme.io")]


class TestProviderFailureScenario:
    """Provider returns 500 for subscriber A and 200 for subscriber B."""

    SUBSCRIBER_A = "a@acme.io"
    SUBSCRIBER_B = "b@acme.io"

    @pytest.mark.asyncio
    async def test_retain_policy_keeps_failed_task_and_delivers_the_rest(self, session_factory):
        """Test that a failing subscriber queued first does not hold back the next one."""
        email_client, requests = _provider(self.SUBSCRIBER_A)
        issue_id = _seed_issue(session_factory, [self.SUBSCRIBER_A, self.SUBSCRIBER_B])

        outcomes = await _single_pass(session_factory, email_client, "retain")
        await email_client.aclose()

        assert outcomes == [
            ExecutionOutcome.TASK_RETAINED,
            ExecutionOutcome.TASK_COMPLETED,
            ExecutionOutcome.EMPTY_QUEUE,
        ]
        assert requests == [self.SUBSCRIBER_A, self.SUBSCRIBER_B]
        assert _queued(session_factory) == [(issue_id, self.SUBSCRIBER_A)]
        assert _retries(session_factory) == {self.SUBSCRIBER_A: 1}

    @pytest.mark.asyncio
    async def test_repeated_iterations_never_starve_other_subscribers(self, session_factory):
        email_client, requests = _provider(self.SUBSCRIBER_A)
        _seed_issue(session_factory, [self.SUBSCRIBER_A, self.SUBSCRIBER_B])

        for _ in range(20):
            await try_execute_task(session_factory, email_client, "retain")
        await email_client.aclose()

        assert requests.count(self.SUBSCRIBER_A) == 1
        assert requests.count(self.SUBSCRIBER_B) == 1
        assert [email for _, email in _queued(session_factory)] == [self.SUBSCRIBER_A]

    @pytest.mark.asyncio
    async def test_drop_policy_removes_both_tasks(self, session_factory):
        email_client, requests = _provider(self.SUBSCRIBER_A)
        _seed_issue(session_factory, [self.SUBSCRIBER_A, self.SUBSCRIBER_B])

        outcomes = await _single_pass(session_factory, email_client, "drop")
        await email_client.aclose()

        assert outcomes == [
            ExecutionOutcome.TASK_COMPLETED,
            ExecutionOutcome.TASK_COMPLETED,
            ExecutionOutcome.EMPTY_QUEUE,
        ]
        assert requests == [self.SUBSCRIBER_A, self.SUBSCRIBER_B]
        assert _queued(session_factory) == []

    @pytest.mark.asyncio
    async def test_retained_task_is_delivered_once_provider_recovers(self, session_factory, fake_email_client):
        fake_email_client.failures[self.SUBSCRIBER_A] = EmailTransientError("500")
        _seed_issue(session_factory, [self.SUBSCRIBER_A])

        assert await try_execute_task(session_factory, fake_email_client, "retain") == ExecutionOutcome.TASK_RETAINED
        fake_email_client.failures.clear()
        _make_due(session_factory)
        assert await try_execute_task(session_factory, fake_email_client, "retain") == ExecutionOutcome.TASK_COMPLETED

        assert [sent[0] for sent in fake_email_client.sent] == [self.SUBSCRIBER_A]
        assert _queued(session_factory) == []


class TestRetryBackoff:
    """Test deferral of transiently failing deliveries."""

    @pytest.mark.asyncio
    async def test_deferred_task_is_not_due_immediately(self, session_factory, fake_email_client):
        fake_email_client.failures["ada@acme.io"] = EmailTransientError("timeout")
        _seed_issue(session_factory, ["ada@acme.io"])

        assert await try_execute_task(session_factory, fake_email_client, "retain") == ExecutionOutcome.TASK_RETAINED
        assert await try_execute_task(session_factory, fake_email_client, "retain") == ExecutionOutcome.EMPTY_QUEUE
        assert len(fake_email_client.attempts) == 1

    @pytest.mark.asyncio
    async def test_each_failure_counts_a_retry(self, session_factory, fake_email_client):
        fake_email_client.failures["ada@acme.io"] = EmailTransientError("timeout")
        _seed_issue(session_factory, ["ada@acme.io"])

        for _ in range(3):
            assert await try_execute_task(session_factory, fake_email_client, "retain") == ExecutionOutcome.TASK_RETAINED
            _make_due(session_factory)

        assert _retries(session_factory) == {"ada@acme.io": 3}

    def test_delay_doubles_up_to_the_cap(self):
        with patch.object(settings, "DELIVERY_RETRY_BASE_DELAY_SECONDS", 5), \
                patch.object(settings, "DELIVERY_RETRY_MAX_DELAY_SECONDS", 60):
            assert [retry_delay_seconds(n) for n in range(6)] == [5, 10, 20, 40, 60, 60]


class TestWorkerLoop:
    """Test the cancellable outer loop."""

    @pytest.mark.asyncio
    async def test_stop_event_wakes_idle_loop(self, session_factory, fake_email_client):
        stop_event = asyncio.Event()
        task = asyncio.create_task(
            worker_loop(session_factory, fake_email_client, stop_event, empty_queue_delay=60, error_delay=60)
        )
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=2)
        assert task.done()

    @pytest.mark.asyncio
    async def test_loop_survives_iteration_errors(self, session_factory, fake_email_client):
        stop_event = asyncio.Event()
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise StoreError("store unavailable")
            stop_event.set()
            return ExecutionOutcome.EMPTY_QUEUE

        with patch("newsletter.services.issue_delivery_worker.try_execute_task", AsyncMock(side_effect=flaky)):
            await asyncio.wait_for(
                worker_loop(session_factory, fake_email_client, stop_event, empty_queue_delay=0, error_delay=0),
                timeout=2,
            )

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_worker_drains_queue_and_stops(self, session_factory, fake_email_client):
        _seed_issue(session_factory, ["ada@acme.io", "grace@acme.io"])
        worker = IssueDeliveryWorker(
            session_factory=session_factory,
            email_client=fake_email_client,
            empty_queue_delay=0.01,
            error_delay=0.01,
        )

        await worker.start()
        assert worker.running
        for _ in range(200):
            if not _queued(session_factory):
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert not worker.running
        assert sorted(sent[0] for sent in fake_email_client.sent) == ["ada@acme.io", "grace@acme.io"]
        assert _queued(session_factory) == []
