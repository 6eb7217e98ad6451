"""
Idempotent command processor.

A request carrying an idempotency key first tries to claim the
``(user_id, idempotency_key)`` row with ``INSERT ... ON CONFLICT DO NOTHING``.
The store's primary key decides the race: exactly one caller inserts the row and
is handed the open transaction, every other caller either replays the saved
response or hits the in-flight policy.
"""
import base64
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.responses import Response

from newsletter.config import settings
from newsletter.core.exceptions import IdempotencyConflict, NoSavedResponse, StoreError
from newsletter.core.transaction import OutboxTransaction
from newsletter.database import dialect_insert
from newsletter.domain.idempotency_key import IdempotencyKey
from newsletter.models.idempotency import IdempotencyRecord
from newsletter.obs.logging import get_logger
from newsletter.obs.metrics import record_idempotency_outcome, record_idempotency_purged

logger = get_logger(__name__)

# Backoff bounds for the ``wait`` in-flight policy
WAIT_INITIAL_DELAY_SECONDS = 0.05
WAIT_MAX_DELAY_SECONDS = 1.0


@dataclass
class SavedHttpResponse:
    """An HTTP response as persisted on the idempotency record."""

    status_code: int
    headers: List[Tuple[str, bytes]]
    body: bytes

    @classmethod
    def from_response(cls, response: Response) -> "SavedHttpResponse":
        """Capture status, raw headers in order and body of a buffered response."""
        headers = [(name.decode("latin-1"), value) for name, value in response.raw_headers]
        return cls(status_code=response.status_code, headers=headers, body=bytes(response.body))

    def to_response(self) -> Response:
        """Rebuild a response whose status, headers and body match the saved ones exactly."""
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [(name.encode("latin-1"), value) for name, value in self.headers]
        return response

    def headers_to_json(self) -> list:
        return [
            {"name": name, "value": base64.b64encode(value).decode("ascii")}
            for name, value in self.headers
        ]

    @staticmethod
    def headers_from_json(payload: list) -> List[Tuple[str, bytes]]:
        return [(item["name"], base64.b64decode(item["value"])) for item in payload]


@dataclass
class ReturnSavedResponse:
    """The action already ran; replay ``response`` and do nothing else."""

    response: SavedHttpResponse


@dataclass
class StartProcessing:
    """The caller owns the claim and must commit or roll back ``transaction``."""

    transaction: OutboxTransaction


NextAction = Union[ReturnSavedResponse, StartProcessing]


def _claim(db: Session, key: IdempotencyKey, user_id: str) -> bool:
    stmt = (
        dialect_insert(db, IdempotencyRecord.__table__)
        .values(
            user_id=user_id,
            idempotency_key=key.value,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "idempotency_key"])
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def _load_record(db: Session, key: IdempotencyKey, user_id: str) -> Optional[IdempotencyRecord]:
    return db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.user_id == user_id,
            IdempotencyRecord.idempotency_key == key.value,
        )
    ).scalar_one_or_none()


def _to_saved_response(record: IdempotencyRecord) -> SavedHttpResponse:
    return SavedHttpResponse(
        status_code=record.response_status_code,
        headers=SavedHttpResponse.headers_from_json(record.response_headers),
        body=bytes(record.response_body),
    )


def get_saved_response(db: Session, key: IdempotencyKey, user_id: str) -> Optional[SavedHttpResponse]:
    """
    Fetch the saved response for ``(user_id, key)``.

    Returns:
        The saved response, or None when no record exists or the record is
        still in flight.
    """
    try:
        record = _load_record(db, key, user_id)
    except SQLAlchemyError as e:
        raise StoreError("Failed to read idempotency record", original=e) from e
    if record is None or not record.is_complete:
        return None
    return _to_saved_response(record)


def try_begin(
    db: Session,
    key: IdempotencyKey,
    user_id: str,
    policy: Optional[str] = None,
    wait_timeout: Optional[float] = None,
) -> NextAction:
    """
    Decide whether the action identified by ``(user_id, key)`` should run.

    Args:
        db: Session dedicated to this request. On ``StartProcessing`` its open
            transaction is handed over to the caller.
        key: Validated idempotency key.
        user_id: Identity of the caller.
        policy: In-flight policy (``error``, ``conflict`` or ``wait``). Defaults
            to ``settings.IDEMPOTENCY_IN_FLIGHT_POLICY``.
        wait_timeout: Seconds the ``wait`` policy polls before giving up.

    Returns:
        ``ReturnSavedResponse`` or ``StartProcessing``.

    Raises:
        NoSavedResponse: The key is in flight and the policy is ``error``.
        IdempotencyConflict: The key is in flight and the policy is ``conflict``,
            or the ``wait`` policy timed out.
        StoreError: The store failed; the transaction has been rolled back.
    """
    policy = policy or settings.IDEMPOTENCY_IN_FLIGHT_POLICY
    if wait_timeout is None:
        wait_timeout = settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS

    deadline = time.monotonic() + wait_timeout
    delay = WAIT_INITIAL_DELAY_SECONDS
    log_extra = {'user_id': user_id, 'idempotency_key': key.value}

    while True:
        try:
            if _claim(db, key, user_id):
                record_idempotency_outcome("started")
                logger.info("Idempotency key claimed", extra={**log_extra, 'idempotency': 'started'})
                return StartProcessing(OutboxTransaction(db))

            saved = get_saved_response(db, key, user_id)
            # Nothing in this transaction is worth keeping once the claim failed
            db.rollback()
        except StoreError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError("Failed to claim idempotency key", original=e) from e

        if saved is not None:
            record_idempotency_outcome("replayed")
            logger.info("Replaying saved response", extra={**log_extra, 'idempotency': 'replayed'})
            return ReturnSavedResponse(saved)

        record_idempotency_outcome("in_flight")

        if policy == "wait" and time.monotonic() + delay <= deadline:
            logger.debug("Idempotency key in flight, waiting", extra={**log_extra, 'idempotency': 'in_flight'})
            time.sleep(delay)
            delay = min(delay * 2, WAIT_MAX_DELAY_SECONDS)
            continue

        logger.warning(
            f"Idempotency key in flight (policy={policy})",
            extra={**log_extra, 'idempotency': 'in_flight'},
        )
        if policy == "error":
            raise NoSavedResponse()
        raise IdempotencyConflict(retry_after=settings.IDEMPOTENCY_RETRY_AFTER_SECONDS)


def save_response(
    transaction: OutboxTransaction,
    key: IdempotencyKey,
    user_id: str,
    response: SavedHttpResponse,
):
    """Fill in the response columns of the claim row owned by ``transaction``."""
    db = transaction.session
    try:
        record = _load_record(db, key, user_id)
        if record is None:
            raise StoreError(f"No idempotency claim found for key {key.value!r}")
        record.response_status_code = response.status_code
        record.response_headers = response.headers_to_json()
        record.response_body = response.body
        db.flush()
    except SQLAlchemyError as e:
        raise StoreError("Failed to save idempotent response", original=e) from e


def cleanup_expired_idempotency_records(db: Session, ttl_hours: Optional[int] = None) -> int:
    """
    Remove completed idempotency records older than the TTL.

    In-flight claims are left alone; they disappear with their transaction.
    Should be run periodically.

    Returns:
        Number of deleted records.
    """
    ttl_hours = ttl_hours if ttl_hours is not None else settings.IDEMPOTENCY_TTL_HOURS
    cutoff = datetime.now(timezone.utc) - timedelta(hours=ttl_hours)

    try:
        result = db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.created_at < cutoff,
                IdempotencyRecord.response_status_code.is_not(None),
            )
        )
        deleted_count = result.rowcount
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to cleanup idempotency records: {e}")
        raise StoreError("Failed to cleanup idempotency records", original=e) from e

    logger.info(
        f"Cleaned up {deleted_count} idempotency records older than {ttl_hours} hours",
        extra={'task_name': 'cleanup_expired_idempotency_records'},
    )
    record_idempotency_purged(deleted_count)
    return deleted_count
