"""
Persistence contracts the polling engine depends on.

The scheduler only talks to these interfaces, so tests (or another backend)
can swap in their own implementation without touching the polling logic.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fare_tracker.models import TrackedRoute, PriceObservation, PriceAlert


class TrackedRouteRegistry(ABC):
    """The authoritative set of tracked routes."""

    @abstractmethod
    def due_for_polling(self, now: datetime) -> List[TrackedRoute]:
        """Active routes never polled, or last polled at least one interval before `now`."""

    @abstractmethod
    def mark_polled(self, route_id: str, at: datetime) -> None:
        """Record a poll attempt. last_polled_at never moves backwards."""

    @abstractmethod
    def get(self, route_id: str) -> Optional[TrackedRoute]:
        pass

    @abstractmethod
    def add(self, route: TrackedRoute) -> TrackedRoute:
        pass

    @abstractmethod
    def update(self, route_id: str, **changes) -> Optional[TrackedRoute]:
        pass

    @abstractmethod
    def delete(self, route_id: str) -> bool:
        pass

    @abstractmethod
    def list_for_owner(self, owner_id: str) -> List[TrackedRoute]:
        pass

    @abstractmethod
    def list_active(self) -> List[TrackedRoute]:
        pass


class PriceHistoryStore(ABC):
    """Append-only price log per route."""

    @abstractmethod
    def append(self, observation: PriceObservation) -> PriceObservation:
        pass

    @abstractmethod
    def list_for_route(self, route_id: str, limit: Optional[int] = None) -> List[PriceObservation]:
        """Observations newest first, optionally only the latest `limit`."""

    @abstractmethod
    def average_price(self, route_id: str) -> Decimal:
        """Arithmetic mean of the stored prices, Decimal(0) when there are none."""

    @abstractmethod
    def latest(self, route_id: str) -> Optional[PriceObservation]:
        pass


class PriceAlertStore(ABC):
    """Alert events awaiting (or done with) downstream notification."""

    @abstractmethod
    def append(self, alert: PriceAlert) -> PriceAlert:
        pass

    @abstractmethod
    def list_for_route(self, route_id: str) -> List[PriceAlert]:
        pass

    @abstractmethod
    def list_unprocessed(self) -> List[PriceAlert]:
        pass

    @abstractmethod
    def mark_processed(self, alert_id: str, at: datetime) -> bool:
        pass
