from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging

from fare_tracker import __version__
from fare_tracker.api import health, status
from fare_tracker.config import get_settings
from fare_tracker.database import create_tables
from fare_tracker.scheduler import start_scheduler, stop_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Fare Tracker {__version__}")

    if settings.database_url.startswith("sqlite"):
        logger.info("SQLite detected - creating tables if needed")
        create_tables()

    if settings.scheduler_enabled:
        try:
            start_scheduler()
            logger.info("✅ Price polling started")
        except Exception as e:
            logger.error(f"❌ Startup failed: {e}")
    else:
        logger.info("Price polling disabled (SCHEDULER_ENABLED=false)")

    yield

    logger.info("🛑 Shutting down Fare Tracker")

    try:
        await stop_scheduler()
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}")


app = FastAPI(
    title="Fare Tracker",
    description="Tracked flight routes with price-drop alerts",
    version=__version__,
    lifespan=lifespan
)

app.include_router(status.router, tags=["status"])
app.include_router(health.router, tags=["health"])


@app.get("/ping")
async def ping():
    """Simple ping endpoint for health checks."""
    return {"status": "ok"}
