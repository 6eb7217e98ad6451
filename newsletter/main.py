from fastapi import FastAPI

from newsletter.config import settings
from newsletter.database import engine, init_db
from newsletter.obs.errors import register_error_handlers
from newsletter.obs.logging import get_logger, setup_logging
from newsletter.obs.middleware import ObservabilityMiddleware
from newsletter.obs.sentry import setup_sentry
from newsletter.obs.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from newsletter.routes import health, metrics, newsletters
from newsletter.services.issue_delivery_worker import issue_delivery_worker

# Setup observability
setup_logging()
setup_tracing()
setup_sentry()
instrument_sqlalchemy(engine)

logger = get_logger(__name__)

app = FastAPI(title="Newsletter Delivery API")

instrument_fastapi(app)

register_error_handlers(app)

app.add_middleware(ObservabilityMiddleware)

app.include_router(health.router)  # Health checks first
app.include_router(metrics.router)  # Prometheus metrics
app.include_router(newsletters.router)


@app.on_event("startup")
async def startup_event():
    init_db()

    if settings.ENABLE_EMBEDDED_WORKER:
        await issue_delivery_worker.start()
        logger.info("Started embedded issue delivery worker")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    if issue_delivery_worker.running:
        await issue_delivery_worker.stop()
        logger.info("Stopped embedded issue delivery worker")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
