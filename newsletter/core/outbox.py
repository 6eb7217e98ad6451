"""
Transactional outbox writer.

Publishing an issue and queueing one delivery per confirmed subscriber happen in
the transaction that owns the idempotency claim, so the issue, its deliveries
and the saved response become visible together or not at all.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.responses import Response

from newsletter.core.exceptions import StoreError
from newsletter.core.idempotency import SavedHttpResponse, save_response
from newsletter.core.transaction import OutboxTransaction
from newsletter.domain.idempotency_key import IdempotencyKey
from newsletter.models.issue_delivery_queue import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.obs.logging import get_logger
from newsletter.services.subscribers import list_confirmed_subscriber_emails

logger = get_logger(__name__)


def insert_newsletter_issue(
    transaction: OutboxTransaction,
    title: str,
    text_content: str,
    html_content: str,
) -> str:
    """Insert a new issue and return its freshly generated id."""
    newsletter_issue_id = str(uuid4())
    db = transaction.session
    try:
        db.execute(
            insert(NewsletterIssue.__table__).values(
                newsletter_issue_id=newsletter_issue_id,
                title=title,
                text_content=text_content,
                html_content=html_content,
                published_at=datetime.now(timezone.utc),
            )
        )
    except SQLAlchemyError as e:
        raise StoreError("Failed to insert newsletter issue", original=e) from e
    return newsletter_issue_id


def enqueue_delivery_tasks(transaction: OutboxTransaction, newsletter_issue_id: str) -> int:
    """
    Queue one delivery per subscriber confirmed at this instant.

    The subscriber list is read once, inside the transaction that owns the
    claim, so later confirmations never join an issue already published.

    Returns:
        Number of queued deliveries.
    """
    db = transaction.session
    emails = list_confirmed_subscriber_emails(db)
    if not emails:
        return 0

    try:
        db.execute(
            insert(IssueDeliveryTask.__table__),
            [{"newsletter_issue_id": newsletter_issue_id, "subscriber_email": email} for email in emails],
        )
    except SQLAlchemyError as e:
        raise StoreError("Failed to enqueue delivery tasks", original=e) from e
    return len(emails)


def schedule_newsletter_delivery(
    transaction: OutboxTransaction,
    title: str,
    text_content: str,
    html_content: str,
) -> str:
    """Insert the issue and fan out its deliveries. Returns the issue id."""
    newsletter_issue_id = insert_newsletter_issue(transaction, title, text_content, html_content)
    queued = enqueue_delivery_tasks(transaction, newsletter_issue_id)
    logger.info(
        f"Scheduled newsletter issue for {queued} subscribers",
        extra={'newsletter_issue_id': newsletter_issue_id},
    )
    return newsletter_issue_id


def persist_final_response(
    transaction: OutboxTransaction,
    key: IdempotencyKey,
    user_id: str,
    response: Response,
) -> Response:
    """
    Save ``response`` on the claim row and commit the transaction.

    Returns:
        A response equal to the one later retries will replay.
    """
    saved = SavedHttpResponse.from_response(response)
    try:
        save_response(transaction, key, user_id, saved)
    except Exception:
        transaction.rollback()
        raise
    transaction.commit()
    return saved.to_response()


def get_delivery_queue_depth(db: Session) -> int:
    """Number of deliveries still waiting in the queue."""
    try:
        return db.execute(select(func.count()).select_from(IssueDeliveryTask)).scalar_one()
    except SQLAlchemyError as e:
        raise StoreError("Failed to count pending deliveries", original=e) from e
