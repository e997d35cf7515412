from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fare_tracker import __version__
from fare_tracker.database import get_db
from fare_tracker.models import TrackedRoute, PriceAlert
from fare_tracker.scheduler import get_scheduler_status

router = APIRouter()


@router.get("/status")
async def status(db: Session = Depends(get_db)):
    """Scheduler state, last tick summary, provider circuit and route counts."""
    active_routes = db.query(TrackedRoute).filter(TrackedRoute.is_active == True).count()
    pending_alerts = db.query(PriceAlert).filter(PriceAlert.is_processed == False).count()

    return {
        "version": __version__,
        "scheduler": get_scheduler_status(),
        "active_routes": active_routes,
        "pending_alerts": pending_alerts,
    }
