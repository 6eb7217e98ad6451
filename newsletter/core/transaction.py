"""
Single-use transaction handle granted to the owner of an idempotency claim.
"""
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.core.exceptions import StoreError, TransactionAlreadyConsumed
from newsletter.obs.logging import get_logger

logger = get_logger(__name__)


class OutboxTransaction:
    """
    Wraps the session holding the open claim transaction.

    ``commit()`` or ``rollback()`` may be called exactly once; any further use of
    the handle raises ``TransactionAlreadyConsumed``. Leaving a ``with`` block
    without consuming the handle rolls it back, which removes the claim row.
    """

    def __init__(self, session: Session):
        self._session = session
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def session(self) -> Session:
        self._ensure_open()
        return self._session

    def commit(self):
        self._ensure_open()
        self._consumed = True
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            self._session.rollback()
            raise StoreError("Failed to commit transaction", original=e) from e

    def rollback(self):
        self._ensure_open()
        self._consumed = True
        self._session.rollback()

    def _ensure_open(self):
        if self._consumed:
            raise TransactionAlreadyConsumed("Transaction has already been committed or rolled back")

    def __enter__(self) -> "OutboxTransaction":
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._consumed:
            if exc_type is None:
                logger.warning("Transaction handle released without commit, rolling back")
            self.rollback()
        return False
