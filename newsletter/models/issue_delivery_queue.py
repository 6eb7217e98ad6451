"""
Outbox of pending (issue, subscriber) deliveries.
"""
from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from newsletter.database import Base


class IssueDeliveryTask(Base):
    """
    A pending delivery. The row is deleted once the task is finished,
    whether the email was sent or the task was dropped.

    A transient failure pushes ``execute_after`` back and bumps ``n_retries``
    so the row stops blocking the rest of the queue.
    """

    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id = Column(String(36), primary_key=True)
    subscriber_email = Column(Text, primary_key=True)
    execute_after = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    n_retries = Column(Integer, nullable=False, server_default="0")

    __table_args__ = (
        Index("idx_issue_delivery_queue_execute_after", "execute_after"),
    )

    def __repr__(self):
        return f"<IssueDeliveryTask(issue={self.newsletter_issue_id}, n_retries={self.n_retries})>"
