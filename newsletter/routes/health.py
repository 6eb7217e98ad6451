"""
Health check and monitoring endpoints
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from newsletter.config import settings
from newsletter.core.outbox import get_delivery_queue_depth
from newsletter.database import get_db
from newsletter.obs.logging import get_logger
from newsletter.obs.metrics import set_queue_depth
from newsletter.services.issue_delivery_worker import issue_delivery_worker

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@router.get("/health/detailed")
def detailed_health_check(db: Session = Depends(get_db)):
    """Detailed health check with the store and the delivery queue"""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    try:
        start_time = datetime.now(timezone.utc)
        db.execute(text("SELECT 1"))
        response_time = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        health_status["checks"]["database"] = {"status": "healthy", "response_time_ms": response_time}

        depth = get_delivery_queue_depth(db)
        set_queue_depth(depth)
        health_status["checks"]["delivery_queue"] = {"status": "healthy", "depth": depth}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "unhealthy"

    health_status["checks"]["embedded_worker"] = {
        "enabled": settings.ENABLE_EMBEDDED_WORKER,
        "running": issue_delivery_worker.running,
    }

    return health_status
