"""
Idempotency record model for replaying responses to duplicate requests.
"""
from sqlalchemy import Column, DateTime, Index, JSON, LargeBinary, SmallInteger, String
from sqlalchemy.dialects.postgresql import JSONB

from newsletter.database import Base


class IdempotencyRecord(Base):
    """
    One row per (user, idempotency key).

    The row is inserted with empty response columns to claim the key and is
    completed once the handler has produced its final response.
    """

    __tablename__ = "idempotency"

    user_id = Column(String(36), primary_key=True)
    idempotency_key = Column(String(50), primary_key=True)

    # All three are NULL while the request is still in flight
    response_status_code = Column(SmallInteger, nullable=True)
    # List of {"name": str, "value": base64 of raw header bytes}
    response_headers = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    response_body = Column(LargeBinary, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_idempotency_created', 'created_at'),
    )

    @property
    def is_complete(self) -> bool:
        return (
            self.response_status_code is not None
            and self.response_headers is not None
            and self.response_body is not None
        )

    def __repr__(self):
        return f"<IdempotencyRecord(user={self.user_id}, key={self.idempotency_key}, complete={self.is_complete})>"
