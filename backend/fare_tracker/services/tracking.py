"""
Route lifecycle: create, change, delete tracked routes and their recipients.

This is what a CRUD API would call. Creating a route triggers an immediate
best-effort poll so the user gets a first price without waiting a tick.
"""
import logging
from typing import List, Optional

from fare_tracker.models import TrackedRoute, NotificationRecipient, PriceObservation
from fare_tracker.repositories.base import TrackedRouteRegistry, PriceHistoryStore
from fare_tracker.repositories.recipients import RecipientRepository
from fare_tracker.schemas.route import TrackedRouteCreate, TrackedRouteUpdate, RecipientCreate
from fare_tracker.services.polling import PricePollingService

logger = logging.getLogger(__name__)

# Update fields where None means "any" rather than "not provided"
NULLABLE_FIELDS = {"max_stops"}


class TrackingService:

    def __init__(
        self,
        registry: TrackedRouteRegistry,
        recipients: RecipientRepository,
        history: Optional[PriceHistoryStore] = None,
        polling: Optional[PricePollingService] = None,
    ):
        self.registry = registry
        self.recipients = recipients
        self.history = history
        self.polling = polling

    async def create_route(self, data: TrackedRouteCreate, poll_immediately: bool = True) -> TrackedRoute:
        route = self.registry.add(TrackedRoute(**data.model_dump()))
        logger.info(f"Tracking new route {route.id}: {route.display_name} for {route.owner_id}")

        if poll_immediately and self.polling is not None:
            try:
                result = await self.polling.poll_route_now(route.id)
                if result is not None:
                    logger.info(f"Initial poll for route {route.id}: {result.outcome.value}")
            except Exception as e:
                # The scheduler will pick the route up on its next tick
                logger.warning(f"Initial poll failed for route {route.id}: {e}")

        return self.registry.get(route.id) or route

    def update_route(self, route_id: str, data: TrackedRouteUpdate) -> Optional[TrackedRoute]:
        changes = {
            name: value
            for name, value in data.model_dump(exclude_unset=True).items()
            if value is not None or name in NULLABLE_FIELDS
        }
        if not changes:
            return self.registry.get(route_id)

        route = self.registry.update(route_id, **changes)
        if route is None:
            logger.warning(f"Cannot update route {route_id}: not found")
        else:
            logger.info(f"Updated route {route_id}: {', '.join(sorted(changes))}")
        return route

    def delete_route(self, route_id: str) -> bool:
        """Deletes the route along with its price history, alerts and recipients."""
        deleted = self.registry.delete(route_id)
        if deleted:
            logger.info(f"Deleted route {route_id}")
        return deleted

    def list_routes(self, owner_id: str) -> List[TrackedRoute]:
        return self.registry.list_for_owner(owner_id)

    def add_recipient(self, route_id: str, data: RecipientCreate) -> Optional[NotificationRecipient]:
        if self.registry.get(route_id) is None:
            logger.warning(f"Cannot add recipient to route {route_id}: not found")
            return None
        return self.recipients.add(NotificationRecipient(route_id=route_id, **data.model_dump()))

    def remove_recipient(self, recipient_id: str) -> bool:
        return self.recipients.remove(recipient_id)

    def price_history(self, route_id: str, limit: Optional[int] = None) -> List[PriceObservation]:
        if self.history is None:
            return []
        return self.history.list_for_route(route_id, limit=limit)
