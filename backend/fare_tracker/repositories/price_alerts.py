from datetime import datetime
from typing import List

from sqlalchemy.orm import sessionmaker

from fare_tracker.models import PriceAlert
from fare_tracker.repositories.base import PriceAlertStore


class SqlPriceAlertStore(PriceAlertStore):

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append(self, alert: PriceAlert) -> PriceAlert:
        with self.session_factory() as db:
            db.add(alert)
            db.commit()
            db.refresh(alert)
        return alert

    def list_for_route(self, route_id: str) -> List[PriceAlert]:
        with self.session_factory() as db:
            return db.query(PriceAlert).filter(
                PriceAlert.route_id == route_id
            ).order_by(PriceAlert.alerted_at.desc()).all()

    def list_unprocessed(self) -> List[PriceAlert]:
        """Oldest first, the order a notifier should drain them in."""
        with self.session_factory() as db:
            return db.query(PriceAlert).filter(
                PriceAlert.is_processed == False
            ).order_by(PriceAlert.alerted_at.asc()).all()

    def mark_processed(self, alert_id: str, at: datetime) -> bool:
        with self.session_factory() as db:
            updated = db.query(PriceAlert).filter(
                PriceAlert.id == alert_id,
                PriceAlert.is_processed == False,
            ).update({PriceAlert.is_processed: True, PriceAlert.processed_at: at}, synchronize_session=False)
            db.commit()
        return updated > 0
