from sqlalchemy import Column, String, Boolean, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship

from fare_tracker.database import Base
from fare_tracker.utils import utcnow, new_id


class PriceAlert(Base):
    __tablename__ = "price_alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    route_id = Column(
        String(36),
        ForeignKey("tracked_routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    old_price = Column(Numeric(10, 2), nullable=False)  # route average at alert time
    new_price = Column(Numeric(10, 2), nullable=False)  # observed price that triggered it
    percent_change = Column(Numeric(7, 2), nullable=False)  # negative = drop
    currency = Column(String(3), default="USD", nullable=False)
    alerted_at = Column(DateTime, default=utcnow, nullable=False)

    # Downstream notifier bookkeeping
    is_processed = Column(Boolean, default=False, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)

    route = relationship("TrackedRoute", back_populates="alerts")

    def __repr__(self) -> str:
        return f"<PriceAlert {self.id}: {self.old_price} -> {self.new_price} ({self.percent_change}%)>"
