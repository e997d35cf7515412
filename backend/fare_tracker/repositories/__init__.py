from fare_tracker.repositories.base import TrackedRouteRegistry, PriceHistoryStore, PriceAlertStore
from fare_tracker.repositories.tracked_routes import SqlTrackedRouteRegistry
from fare_tracker.repositories.price_history import SqlPriceHistoryStore
from fare_tracker.repositories.price_alerts import SqlPriceAlertStore
from fare_tracker.repositories.recipients import RecipientRepository

__all__ = [
    "TrackedRouteRegistry",
    "PriceHistoryStore",
    "PriceAlertStore",
    "SqlTrackedRouteRegistry",
    "SqlPriceHistoryStore",
    "SqlPriceAlertStore",
    "RecipientRepository",
]
