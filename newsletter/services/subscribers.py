"""
Read access to the subscriber list.
"""
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.core.exceptions import StoreError
from newsletter.models.subscription import Subscription, SubscriptionStatus


def list_confirmed_subscriber_emails(db: Session) -> List[str]:
    """Emails of every subscriber currently in ``confirmed`` status."""
    try:
        rows = db.execute(
            select(Subscription.email)
            .where(Subscription.status == SubscriptionStatus.CONFIRMED.value)
            .order_by(Subscription.subscribed_at)
        ).scalars()
        return list(rows)
    except SQLAlchemyError as e:
        raise StoreError("Failed to list confirmed subscribers", original=e) from e
