from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from fare_tracker.database import Base
from fare_tracker.utils import utcnow, new_id


class NotificationRecipient(Base):
    """Email address subscribed to one route's alerts."""
    __tablename__ = "notification_recipients"

    id = Column(String(36), primary_key=True, default=new_id)
    route_id = Column(
        String(36),
        ForeignKey("tracked_routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    email = Column(String(255), nullable=False)
    name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    route = relationship("TrackedRoute", back_populates="recipients")

    def __repr__(self) -> str:
        return f"<NotificationRecipient {self.email} for {self.route_id}>"
