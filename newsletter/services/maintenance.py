"""
Periodic maintenance run by the standalone worker process.
"""
import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from newsletter.config import settings
from newsletter.core.idempotency import cleanup_expired_idempotency_records
from newsletter.obs.logging import get_logger

logger = get_logger(__name__)


def run_idempotency_cleanup(session_factory: Callable[[], Session], ttl_hours: Optional[int] = None) -> dict:
    """
    Purge expired idempotency records in a fresh session.

    Returns:
        Dict with ``success`` and either ``cleaned_count`` or ``error``.
    """
    db = session_factory()
    try:
        deleted = cleanup_expired_idempotency_records(db, ttl_hours=ttl_hours)
        return {"success": True, "cleaned_count": deleted}
    except Exception as e:
        logger.error(
            f"Idempotency cleanup failed: {str(e)}",
            extra={'service': 'worker', 'task_name': 'cleanup_expired_idempotency_records'},
        )
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def idempotency_cleanup_loop(
    session_factory: Callable[[], Session],
    stop_event: asyncio.Event,
    interval: Optional[float] = None,
):
    """Run ``run_idempotency_cleanup`` every ``interval`` seconds until ``stop_event`` is set."""
    if interval is None:
        interval = settings.IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS

    while not stop_event.is_set():
        await asyncio.to_thread(run_idempotency_cleanup, session_factory)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
