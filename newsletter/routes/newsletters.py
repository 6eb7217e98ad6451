"""
Admin endpoints for publishing newsletter issues.

Publishing is idempotent per (user, idempotency key): a retried submission
replays the first response and never publishes a second issue.
"""
from typing import Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Request
from fastapi.responses import RedirectResponse, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from newsletter.core.exceptions import ConflictRace, InvalidNewsletterForm
from newsletter.core.idempotency import ReturnSavedResponse, try_begin
from newsletter.core.outbox import persist_final_response, schedule_newsletter_delivery
from newsletter.database import get_db
from newsletter.domain.idempotency_key import IdempotencyKey
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.obs.logging import get_logger

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])
logger = get_logger(__name__)

PUBLISH_FLASH_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


def get_current_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    """
    Identity of the authenticated admin, set by the upstream auth layer.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        user_id = str(UUID(x_user_id))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user identity")
    request.state.user_id = user_id
    return user_id


@router.post("", status_code=303)
def publish_newsletter(
    request: Request,
    title: str = Form(""),
    text_content: str = Form(""),
    html_content: str = Form(""),
    idempotency_key: str = Form(""),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Response:
    """
    Publish an issue to every confirmed subscriber.

    Responds with a 303 redirect back to the admin page. Submitting the same
    idempotency key again returns the same redirect without publishing.
    """
    key = IdempotencyKey.parse(idempotency_key)

    if not title or not text_content or not html_content:
        raise InvalidNewsletterForm("Title, text content and HTML content are all required")

    request.state.idempotency_key = key.value
    try:
        next_action = try_begin(db, key, user_id)
    except ConflictRace:
        request.state.idempotency = "in_flight"
        raise

    if isinstance(next_action, ReturnSavedResponse):
        request.state.idempotency = "replayed"
        return next_action.response.to_response()

    request.state.idempotency = "started"

    with next_action.transaction as transaction:
        newsletter_issue_id = schedule_newsletter_delivery(transaction, title, text_content, html_content)
        response = RedirectResponse(
            url="/admin/newsletters",
            status_code=303,
            headers={"X-Flash-Message": PUBLISH_FLASH_MESSAGE},
        )
        logger.info(
            "Newsletter issue published",
            extra={'user_id': user_id, 'newsletter_issue_id': newsletter_issue_id, 'idempotency_key': key.value},
        )
        return persist_final_response(transaction, key, user_id, response)


@router.get("")
def list_newsletters(
    limit: int = 20,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Recent issues and a fresh idempotency key for the next submission."""
    issues = db.execute(
        select(NewsletterIssue).order_by(NewsletterIssue.published_at.desc()).limit(min(max(limit, 1), 100))
    ).scalars().all()

    return {
        "idempotency_key": str(uuid4()),
        "issues": [
            {
                "newsletter_issue_id": issue.newsletter_issue_id,
                "title": issue.title,
                "published_at": issue.published_at.isoformat() if issue.published_at else None,
            }
            for issue in issues
        ],
    }
