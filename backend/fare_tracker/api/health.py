from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text

from fare_tracker.database import get_db
from fare_tracker.config import get_settings
from fare_tracker.scheduler import get_scheduler_status

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Liveness for Docker/monitoring: database reachable and poller running when enabled."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {e}"

    scheduler_running = get_scheduler_status()["running"]
    scheduler_ok = scheduler_running or not get_settings().scheduler_enabled

    return {
        "status": "ok" if db_status == "healthy" and scheduler_ok else "degraded",
        "database": db_status,
        "scheduler": "running" if scheduler_running else "stopped",
    }
