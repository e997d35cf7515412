from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from fare_tracker.models import PriceObservation
from fare_tracker.repositories.base import PriceHistoryStore


class SqlPriceHistoryStore(PriceHistoryStore):
    """
    SQLAlchemy-backed price log.

    The average is taken over the full history unless `window` is set, in
    which case only the latest `window` observations count. Histories are
    bounded by how long a route stays tracked, so loading the price column
    is acceptable; the Decimal sum keeps the mean exact.
    """

    def __init__(self, session_factory: sessionmaker, window: Optional[int] = None):
        if window is not None and window < 1:
            raise ValueError("window must be at least 1 (or None for the full history)")
        self.session_factory = session_factory
        self.window = window

    def append(self, observation: PriceObservation) -> PriceObservation:
        with self.session_factory() as db:
            db.add(observation)
            db.commit()
            db.refresh(observation)
        return observation

    def list_for_route(self, route_id: str, limit: Optional[int] = None) -> List[PriceObservation]:
        with self.session_factory() as db:
            query = db.query(PriceObservation).filter(
                PriceObservation.route_id == route_id
            ).order_by(PriceObservation.observed_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def average_price(self, route_id: str) -> Decimal:
        with self.session_factory() as db:
            query = db.query(PriceObservation.price).filter(
                PriceObservation.route_id == route_id
            ).order_by(PriceObservation.observed_at.desc())
            if self.window is not None:
                query = query.limit(self.window)
            prices = [Decimal(str(price)) for (price,) in query.all()]

        if not prices:
            return Decimal(0)
        return sum(prices, Decimal(0)) / len(prices)

    def latest(self, route_id: str) -> Optional[PriceObservation]:
        observations = self.list_for_route(route_id, limit=1)
        return observations[0] if observations else None
