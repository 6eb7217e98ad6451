"""
Newsletter subscriptions. Only confirmed subscribers receive issues.
"""
import enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from newsletter.database import Base


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle of a subscription"""
    PENDING = "pending_confirmation"   # Signed up, confirmation email not followed yet
    CONFIRMED = "confirmed"            # Eligible for delivery


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    subscribed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # Stored as plain text so the outbox can filter with a literal comparison
    status = Column(String(32), nullable=False, default=SubscriptionStatus.PENDING.value, index=True)

    def __repr__(self):
        return f"<Subscription(id={self.id}, status={self.status})>"
