import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from fare_tracker.models import TrackedRoute
from fare_tracker.repositories.base import TrackedRouteRegistry

logger = logging.getLogger(__name__)

# Fields the CRUD layer may change after creation
MUTABLE_FIELDS = {
    "threshold_percent",
    "polling_interval_minutes",
    "is_active",
    "date_flexibility_days",
    "max_stops",
}


class SqlTrackedRouteRegistry(TrackedRouteRegistry):
    """
    SQLAlchemy-backed registry.

    Every call opens its own short session, so concurrent polling cycles never
    share one and each due-query sees the latest committed mutations.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def due_for_polling(self, now: datetime) -> List[TrackedRoute]:
        with self.session_factory() as db:
            active_routes = db.query(TrackedRoute).filter(TrackedRoute.is_active == True).all()

        return [route for route in active_routes if route.is_due(now)]

    def mark_polled(self, route_id: str, at: datetime) -> None:
        with self.session_factory() as db:
            updated = db.query(TrackedRoute).filter(
                TrackedRoute.id == route_id,
                or_(TrackedRoute.last_polled_at.is_(None), TrackedRoute.last_polled_at < at),
            ).update({TrackedRoute.last_polled_at: at}, synchronize_session=False)
            db.commit()

        if updated == 0:
            logger.debug(f"mark_polled ignored for route {route_id} (missing or already stamped at/after {at})")

    def get(self, route_id: str) -> Optional[TrackedRoute]:
        with self.session_factory() as db:
            return db.get(TrackedRoute, route_id)

    def add(self, route: TrackedRoute) -> TrackedRoute:
        with self.session_factory() as db:
            db.add(route)
            db.commit()
            db.refresh(route)
        return route

    def update(self, route_id: str, **changes) -> Optional[TrackedRoute]:
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self.session_factory() as db:
            route = db.get(TrackedRoute, route_id)
            if route is None:
                return None
            for field_name, value in changes.items():
                setattr(route, field_name, value)
            db.commit()
            db.refresh(route)
            return route

    def delete(self, route_id: str) -> bool:
        with self.session_factory() as db:
            route = db.get(TrackedRoute, route_id)
            if route is None:
                return False
            db.delete(route)
            db.commit()
        return True

    def list_for_owner(self, owner_id: str) -> List[TrackedRoute]:
        with self.session_factory() as db:
            return db.query(TrackedRoute).filter(
                TrackedRoute.owner_id == owner_id
            ).order_by(TrackedRoute.created_at.desc()).all()

    def list_active(self) -> List[TrackedRoute]:
        with self.session_factory() as db:
            return db.query(TrackedRoute).filter(TrackedRoute.is_active == True).all()
