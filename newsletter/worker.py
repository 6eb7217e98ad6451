"""
Standalone delivery worker process.

    python -m newsletter.worker

Runs the issue delivery loop and the hourly idempotency purge until SIGINT or
SIGTERM, then lets the current task finish before exiting.
"""
import asyncio
import signal

from newsletter.config import settings
from newsletter.database import engine
from newsletter.obs.logging import get_logger, setup_logging
from newsletter.obs.sentry import setup_sentry
from newsletter.obs.tracing import instrument_sqlalchemy, setup_tracing
from newsletter.services.email_client import get_email_client
from newsletter.services.issue_delivery_worker import IssueDeliveryWorker
from newsletter.services.maintenance import idempotency_cleanup_loop

logger = get_logger(__name__)


async def run_worker(worker: IssueDeliveryWorker):
    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopping.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stopping.set))

    await worker.start()
    cleanup = asyncio.create_task(idempotency_cleanup_loop(worker.session_factory, stopping))
    await stopping.wait()
    await worker.stop()
    await cleanup
    await worker.email_client.aclose()


def main():
    setup_logging()
    setup_tracing(settings.OTEL_SERVICE_NAME_WORKER)
    setup_sentry()
    instrument_sqlalchemy(engine)

    logger.info(
        "Issue delivery worker starting",
        extra={'service': 'worker', 'task_name': 'issue_delivery'},
    )
    worker = IssueDeliveryWorker(email_client=get_email_client())
    asyncio.run(run_worker(worker))
    logger.info("Issue delivery worker stopped", extra={'service': 'worker'})


if __name__ == "__main__":
    main()
