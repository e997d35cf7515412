from typing import List

from sqlalchemy.orm import sessionmaker

from fare_tracker.models import NotificationRecipient


class RecipientRepository:
    """Recipients are read by the notification step, never by the scheduler."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, recipient: NotificationRecipient) -> NotificationRecipient:
        with self.session_factory() as db:
            db.add(recipient)
            db.commit()
            db.refresh(recipient)
        return recipient

    def list_for_route(self, route_id: str) -> List[NotificationRecipient]:
        with self.session_factory() as db:
            return db.query(NotificationRecipient).filter(
                NotificationRecipient.route_id == route_id
            ).order_by(NotificationRecipient.email).all()

    def list_active_for_route(self, route_id: str) -> List[NotificationRecipient]:
        with self.session_factory() as db:
            return db.query(NotificationRecipient).filter(
                NotificationRecipient.route_id == route_id,
                NotificationRecipient.is_active == True,
            ).order_by(NotificationRecipient.email).all()

    def remove(self, recipient_id: str) -> bool:
        with self.session_factory() as db:
            recipient = db.get(NotificationRecipient, recipient_id)
            if recipient is None:
                return False
            db.delete(recipient)
            db.commit()
        return True
