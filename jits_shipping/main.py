"""
Jits Apparel Shipping
FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from jits_shipping.api.routes import shipping
from jits_shipping.core.config import settings
from jits_shipping.core.database import AsyncSessionLocal
from jits_shipping.core.error_handler import register_error_handlers
from jits_shipping.services.shipping_jobs import shipping_job_runner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start background jobs on startup and stop them on shutdown.
    """
    if settings.SHIPPING_TRACKING_SYNC_ENABLED:
        await shipping_job_runner.start()
        logger.info("Tracking sync job ENABLED")
    else:
        logger.info("Tracking sync job DISABLED via config")

    yield

    if shipping_job_runner.is_running:
        await shipping_job_runner.stop()


app = FastAPI(
    lifespan=lifespan,
    title=f"{settings.APP_NAME} Shipping API",
    description="Rate quotes, shipments, labels and tracking via Ship Logic (The Courier Guy).",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

register_error_handlers(app)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with a database ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "tracking_sync": "running" if shipping_job_runner.is_running else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        logger.error(f"Health check database ping failed: {e}")
        return JSONResponse(status_code=503, content=health_status)

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "jits_shipping.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
