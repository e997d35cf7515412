# SQLAlchemy models
from fare_tracker.models.tracked_route import TrackedRoute
from fare_tracker.models.price_observation import PriceObservation
from fare_tracker.models.price_alert import PriceAlert
from fare_tracker.models.recipient import NotificationRecipient

__all__ = [
    "TrackedRoute",
    "PriceObservation",
    "PriceAlert",
    "NotificationRecipient",
]
