"""
Issue Delivery Worker
Drains the issue delivery queue one task at a time and emails each subscriber.

Each iteration locks a single queue row with ``FOR UPDATE SKIP LOCKED`` so any
number of workers can run against the same store without sending the same
(issue, subscriber) pair twice. The lock is held until the row is deleted or
deferred and the transaction commits. Workers take the earliest due row
first, so a deferred row never blocks the deliveries queued behind it.
"""
import asyncio
import enum
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.config import settings
from newsletter.core.exceptions import InvalidSubscriberEmail, StoreError
from newsletter.database import SessionLocal
from newsletter.domain.subscriber_email import SubscriberEmail
from newsletter.models.issue_delivery_queue import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.obs.logging import get_logger, log_delivery
from newsletter.obs.metrics import record_delivery
from newsletter.obs.sentry import capture_exception
from newsletter.obs.tracing import add_span_error, trace_delivery_task
from newsletter.services.email_client import (
    EmailClient,
    EmailPermanentError,
    EmailTransientError,
    get_email_client,
)

logger = get_logger(__name__)


class ExecutionOutcome(str, enum.Enum):
    """Result of one worker iteration"""
    TASK_COMPLETED = "task_completed"    # Row sent or dropped, then deleted
    EMPTY_QUEUE = "empty_queue"          # Nothing to do
    TASK_RETAINED = "task_retained"      # Transient failure, row deferred


def dequeue_task(db: Session) -> Optional[Tuple[str, str, int]]:
    """Lock the earliest due delivery, skipping rows locked by other workers."""
    row = db.execute(
        select(
            IssueDeliveryTask.newsletter_issue_id,
            IssueDeliveryTask.subscriber_email,
            IssueDeliveryTask.n_retries,
        )
        .where(IssueDeliveryTask.execute_after <= datetime.now(timezone.utc))
        .order_by(IssueDeliveryTask.execute_after)
        .with_for_update(skip_locked=True)
        .limit(1)
    ).first()
    if row is None:
        return None
    return row[0], row[1], row[2]


def retry_delay_seconds(n_retries: int) -> float:
    """Exponential backoff for the next attempt, capped at the configured maximum."""
    delay = settings.DELIVERY_RETRY_BASE_DELAY_SECONDS * (2 ** n_retries)
    return min(delay, settings.DELIVERY_RETRY_MAX_DELAY_SECONDS)


def defer_task(db: Session, newsletter_issue_id: str, subscriber_email: str, n_retries: int):
    """Push a failed delivery behind the rest of the queue."""
    db.execute(
        update(IssueDeliveryTask)
        .where(
            IssueDeliveryTask.newsletter_issue_id == newsletter_issue_id,
            IssueDeliveryTask.subscriber_email == subscriber_email,
        )
        .values(
            execute_after=datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds(n_retries)),
            n_retries=n_retries + 1,
        )
    )


def delete_task(db: Session, newsletter_issue_id: str, subscriber_email: str):
    db.execute(
        delete(IssueDeliveryTask).where(
            IssueDeliveryTask.newsletter_issue_id == newsletter_issue_id,
            IssueDeliveryTask.subscriber_email == subscriber_email,
        )
    )


def get_issue(db: Session, newsletter_issue_id: str) -> Optional[NewsletterIssue]:
    return db.get(NewsletterIssue, newsletter_issue_id)


def _finish(db: Session, newsletter_issue_id: str, subscriber_email: str) -> ExecutionOutcome:
    delete_task(db, newsletter_issue_id, subscriber_email)
    db.commit()
    return ExecutionOutcome.TASK_COMPLETED


async def try_execute_task(
    session_factory: Callable[[], Session],
    email_client: EmailClient,
    transient_failure_policy: Optional[str] = None,
) -> ExecutionOutcome:
    """
    Run a single worker iteration.

    Args:
        session_factory: Returns a new session; one session per iteration.
        email_client: Capability used to send the email.
        transient_failure_policy: ``retain`` keeps the row queued after a
            transient provider failure and defers it with exponential
            backoff; ``drop`` deletes it. Defaults to
            ``settings.DELIVERY_TRANSIENT_FAILURE_POLICY``.

    Returns:
        The iteration outcome.

    Raises:
        StoreError: The store failed; nothing was deleted.
    """
    policy = transient_failure_policy or settings.DELIVERY_TRANSIENT_FAILURE_POLICY

    db = session_factory()
    try:
        task = dequeue_task(db)
        if task is None:
            db.rollback()
            record_delivery("empty")
            return ExecutionOutcome.EMPTY_QUEUE

        newsletter_issue_id, raw_email, n_retries = task
        with trace_delivery_task(newsletter_issue_id, raw_email):
            try:
                subscriber_email = SubscriberEmail.parse(raw_email)
            except InvalidSubscriberEmail as e:
                log_delivery(logger, "invalid_address", newsletter_issue_id, raw_email, error=e)
                record_delivery("invalid_address")
                return _finish(db, newsletter_issue_id, raw_email)

            issue = get_issue(db, newsletter_issue_id)
            if issue is None:
                log_delivery(
                    logger, "dropped", newsletter_issue_id, raw_email,
                    error=LookupError(f"Newsletter issue {newsletter_issue_id} does not exist"),
                )
                record_delivery("dropped")
                return _finish(db, newsletter_issue_id, raw_email)

            try:
                await email_client.send_email(
                    subscriber_email.value,
                    issue.title,
                    issue.html_content,
                    issue.text_content,
                )
            except EmailPermanentError as e:
                add_span_error(e)
                log_delivery(logger, "dropped", newsletter_issue_id, raw_email, error=e)
                record_delivery("dropped")
                return _finish(db, newsletter_issue_id, raw_email)
            except EmailTransientError as e:
                add_span_error(e)
                if policy == "retain":
                    defer_task(db, newsletter_issue_id, raw_email, n_retries)
                    db.commit()
                    log_delivery(
                        logger, "retained", newsletter_issue_id, raw_email, error=e, n_retries=n_retries + 1,
                    )
                    record_delivery("retained")
                    return ExecutionOutcome.TASK_RETAINED
                log_delivery(logger, "dropped", newsletter_issue_id, raw_email, error=e)
                record_delivery("dropped")
                return _finish(db, newsletter_issue_id, raw_email)

            log_delivery(logger, "sent", newsletter_issue_id, raw_email)
            record_delivery("sent")
            return _finish(db, newsletter_issue_id, raw_email)

    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Delivery queue operation failed", original=e) from e
    finally:
        db.close()


async def _sleep_until_stopped(stop_event: asyncio.Event, delay: float):
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def worker_loop(
    session_factory: Callable[[], Session],
    email_client: EmailClient,
    stop_event: asyncio.Event,
    empty_queue_delay: Optional[float] = None,
    error_delay: Optional[float] = None,
    transient_failure_policy: Optional[str] = None,
):
    """
    Drain the queue until ``stop_event`` is set.

    Completed tasks loop immediately; an empty queue waits ``empty_queue_delay``
    seconds; retained tasks and errors wait ``error_delay`` seconds. Setting the
    event wakes any pending wait.
    """
    if empty_queue_delay is None:
        empty_queue_delay = settings.WORKER_EMPTY_QUEUE_DELAY_SECONDS
    if error_delay is None:
        error_delay = settings.WORKER_ERROR_DELAY_SECONDS

    while not stop_event.is_set():
        try:
            outcome = await try_execute_task(session_factory, email_client, transient_failure_policy)
        except Exception as e:
            logger.error(
                f"Error in issue delivery loop: {str(e)}",
                exc_info=True,
                extra={'service': 'worker', 'task_name': 'issue_delivery'},
            )
            capture_exception(e, {'task_name': 'issue_delivery'})
            await _sleep_until_stopped(stop_event, error_delay)
            continue

        if outcome == ExecutionOutcome.EMPTY_QUEUE:
            await _sleep_until_stopped(stop_event, empty_queue_delay)
        elif outcome == ExecutionOutcome.TASK_RETAINED:
            await _sleep_until_stopped(stop_event, error_delay)


class IssueDeliveryWorker:
    """Owns the background task running ``worker_loop``."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        email_client: Optional[EmailClient] = None,
        empty_queue_delay: Optional[float] = None,
        error_delay: Optional[float] = None,
        transient_failure_policy: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.email_client = email_client
        self.empty_queue_delay = empty_queue_delay
        self.error_delay = error_delay
        self.transient_failure_policy = transient_failure_policy
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the background delivery loop"""
        if self.running:
            logger.warning("Issue delivery worker is already running")
            return

        if self.email_client is None:
            self.email_client = get_email_client()

        self._stop_event = asyncio.Event()
        logger.info("Starting issue delivery worker", extra={'service': 'worker'})
        self._task = asyncio.create_task(
            worker_loop(
                self.session_factory,
                self.email_client,
                self._stop_event,
                empty_queue_delay=self.empty_queue_delay,
                error_delay=self.error_delay,
                transient_failure_policy=self.transient_failure_policy,
            )
        )

    async def stop(self):
        """Signal the loop to stop and wait for the current iteration to finish"""
        if not self.running:
            return
        logger.info("Stopping issue delivery worker", extra={'service': 'worker'})
        self._stop_event.set()
        await self._task
        self._task = None


# Global worker instance used by the embedded mode of the API process
issue_delivery_worker = IssueDeliveryWorker()
