from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey, JSON
from sqlalchemy.orm import relationship

from fare_tracker.database import Base
from fare_tracker.utils import utcnow, new_id


class PriceObservation(Base):
    """
    One price sample for a tracked route.

    Rows are append-only and ordered by observed_at, which is the provider's
    retrieval time rather than the insert time.
    """
    __tablename__ = "price_observations"

    id = Column(String(36), primary_key=True, default=new_id)
    route_id = Column(
        String(36),
        ForeignKey("tracked_routes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    observed_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Itinerary/segments of the winning offer, for display only
    offer_details = Column(JSON, nullable=True)

    route = relationship("TrackedRoute", back_populates="observations")

    def __repr__(self) -> str:
        return f"<PriceObservation {self.id}: {self.price} {self.currency} at {self.observed_at}>"
