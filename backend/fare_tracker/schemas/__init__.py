from fare_tracker.schemas.route import TrackedRouteCreate, TrackedRouteUpdate, RecipientCreate

__all__ = ["TrackedRouteCreate", "TrackedRouteUpdate", "RecipientCreate"]
