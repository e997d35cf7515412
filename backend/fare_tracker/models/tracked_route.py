from datetime import timedelta

from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Numeric
from sqlalchemy.orm import relationship

from fare_tracker.database import Base
from fare_tracker.utils import utcnow, new_id


class TrackedRoute(Base):
    """
    A user's interest in a city pair around a target departure date.

    The scheduler only ever writes last_polled_at; every other field belongs
    to whoever manages the route (the CRUD layer / TrackingService).
    """
    __tablename__ = "tracked_routes"

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(255), nullable=False, index=True)

    # Route
    origin = Column(String(3), nullable=False)  # IATA code
    destination = Column(String(3), nullable=False)  # IATA code
    departure_date = Column(Date, nullable=False)
    date_flexibility_days = Column(Integer, default=3, nullable=False)  # search widens +/- this many days
    max_stops = Column(Integer, nullable=True)  # None = any, 0 = nonstop, N = at most N connections

    # Alerting / polling
    threshold_percent = Column(Numeric(5, 2), default=5, nullable=False)
    polling_interval_minutes = Column(Integer, default=15, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_polled_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships (deleting a route removes its history, alerts and recipients)
    observations = relationship(
        "PriceObservation", back_populates="route",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    alerts = relationship(
        "PriceAlert", back_populates="route",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    recipients = relationship(
        "NotificationRecipient", back_populates="route",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def polling_interval(self) -> timedelta:
        return timedelta(minutes=self.polling_interval_minutes)

    @property
    def display_name(self) -> str:
        return f"{self.origin}-{self.destination} {self.departure_date} ±{self.date_flexibility_days}d"

    def is_due(self, now) -> bool:
        """Active and either never polled or last polled at least one interval ago."""
        if not self.is_active:
            return False
        if self.last_polled_at is None:
            return True
        return self.last_polled_at + self.polling_interval <= now

    def has_departed(self, today) -> bool:
        return self.departure_date < today

    def __repr__(self) -> str:
        return f"<TrackedRoute {self.id}: {self.display_name}>"
