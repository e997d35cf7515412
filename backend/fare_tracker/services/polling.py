"""
Price polling cycle.

One tick selects the routes that are due, and runs an independent cycle for
each of them (bounded by a semaphore):

    fetch quote -> record observation -> evaluate against average -> alert? -> stamp

A failure inside one route's cycle is logged and never affects the others.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from fare_tracker.models import TrackedRoute, PriceObservation, PriceAlert
from fare_tracker.repositories.base import TrackedRouteRegistry, PriceHistoryStore, PriceAlertStore
from fare_tracker.services.alert_rules import evaluate_price, quantize_money
from fare_tracker.services.errors import ProviderError
from fare_tracker.services.price_provider import PriceProvider
from fare_tracker.utils import utcnow

logger = logging.getLogger(__name__)


class CycleOutcome(str, enum.Enum):
    SKIPPED_DEPARTED = "skipped_departed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_SHUTDOWN = "skipped_shutdown"
    NO_QUOTE = "no_quote"
    PROVIDER_FAILURE = "provider_failure"
    RECORDED = "recorded"
    ALERTED = "alerted"
    PERSISTENCE_FAILURE = "persistence_failure"
    ERROR = "error"


SKIPPED = {CycleOutcome.SKIPPED_DEPARTED, CycleOutcome.SKIPPED_IN_FLIGHT, CycleOutcome.SKIPPED_SHUTDOWN}
NO_QUOTE = {CycleOutcome.NO_QUOTE, CycleOutcome.PROVIDER_FAILURE}
FAILED = {CycleOutcome.PERSISTENCE_FAILURE, CycleOutcome.ERROR}


@dataclass
class CycleResult:
    route_id: str
    outcome: CycleOutcome
    price: Optional[Decimal] = None
    alert: Optional[PriceAlert] = None
    error: Optional[str] = None


def empty_summary() -> dict:
    return {"due": 0, "polled": 0, "skipped": 0, "no_quote": 0, "alerts": 0, "errors": 0}


class PricePollingService:

    def __init__(
        self,
        registry: TrackedRouteRegistry,
        history: PriceHistoryStore,
        alerts: PriceAlertStore,
        provider: PriceProvider,
        max_concurrency: int = 4,
        stamp_on_error: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.history = history
        self.alerts = alerts
        self.provider = provider
        self.max_concurrency = max(1, max_concurrency)
        self.stamp_on_error = stamp_on_error
        self.clock = clock
        self._in_flight: Set[str] = set()
        self._stopping = False

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def begin_shutdown(self) -> None:
        """Routes that have not started their cycle yet will be skipped."""
        self._stopping = True

    def resume(self) -> None:
        self._stopping = False

    async def run_tick(self, now: Optional[datetime] = None) -> dict:
        """
        Poll every route that is due at `now`.

        Returns summary: {due, polled, skipped, no_quote, alerts, errors}
        """
        now = now or self.clock()
        summary = empty_summary()

        try:
            due_routes = self.registry.due_for_polling(now)
        except Exception as e:
            logger.error(f"❌ Could not load routes due for polling: {e}", exc_info=True)
            summary["errors"] += 1
            return summary

        summary["due"] = len(due_routes)
        if not due_routes:
            logger.debug("No routes due for polling")
            return summary

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(route: TrackedRoute) -> CycleResult:
            async with semaphore:
                return await self.poll_route(route, now)

        results = await asyncio.gather(*(guarded(route) for route in due_routes), return_exceptions=True)

        for route, result in zip(due_routes, results):
            if isinstance(result, BaseException):
                logger.error(f"Polling cycle for route {route.id} escaped its error boundary: {result!r}")
                summary["errors"] += 1
                continue
            self._tally(summary, result)

        logger.info(
            f"Polling tick complete: {summary['due']} due, {summary['polled']} polled, "
            f"{summary['skipped']} skipped, {summary['no_quote']} without quote, "
            f"{summary['alerts']} alerts, {summary['errors']} errors"
        )
        return summary

    @staticmethod
    def _tally(summary: dict, result: CycleResult) -> None:
        if result.outcome in SKIPPED:
            summary["skipped"] += 1
            return
        if result.outcome in FAILED:
            summary["errors"] += 1
            return
        summary["polled"] += 1
        if result.outcome in NO_QUOTE:
            summary["no_quote"] += 1
        elif result.outcome == CycleOutcome.ALERTED:
            summary["alerts"] += 1

    async def poll_route_now(self, route_id: str) -> Optional[CycleResult]:
        """Run one cycle for a single route right away (e.g. just after it was created)."""
        route = self.registry.get(route_id)
        if route is None:
            logger.warning(f"Cannot poll route {route_id}: not found")
            return None
        return await self.poll_route(route, self.clock())

    async def poll_route(self, route: TrackedRoute, now: Optional[datetime] = None) -> CycleResult:
        now = now or self.clock()

        if self._stopping:
            return CycleResult(route.id, CycleOutcome.SKIPPED_SHUTDOWN)

        if route.has_departed(now.date()):
            logger.debug(f"Skipping route {route.display_name}: departure date has passed")
            return CycleResult(route.id, CycleOutcome.SKIPPED_DEPARTED)

        if route.id in self._in_flight:
            logger.debug(f"Skipping route {route.id}: a cycle is already running")
            return CycleResult(route.id, CycleOutcome.SKIPPED_IN_FLIGHT)

        self._in_flight.add(route.id)
        try:
            return await self._run_cycle(route)
        finally:
            self._in_flight.discard(route.id)

    async def _run_cycle(self, route: TrackedRoute) -> CycleResult:
        try:
            return await self._fetch_and_record(route)
        except SQLAlchemyError as e:
            # Leave the route un-stamped so the next tick picks it up again
            logger.error(f"❌ Database error polling route {route.id} ({route.display_name}): {e}", exc_info=True)
            return CycleResult(route.id, CycleOutcome.PERSISTENCE_FAILURE, error=str(e))
        except Exception as e:
            logger.error(f"❌ Polling cycle failed for route {route.id} ({route.display_name}): {e}", exc_info=True)
            if self.stamp_on_error:
                self._stamp_after_error(route)
            return CycleResult(route.id, CycleOutcome.ERROR, error=str(e))

    async def _fetch_and_record(self, route: TrackedRoute) -> CycleResult:
        try:
            quote = await self.provider.quote_route(
                route.origin,
                route.destination,
                route.departure_date,
                route.date_flexibility_days,
                route.max_stops,
            )
        except ProviderError as e:
            logger.warning(f"Price provider failed for route {route.id} ({route.display_name}): {e}")
            self.registry.mark_polled(route.id, self.clock())
            return CycleResult(route.id, CycleOutcome.PROVIDER_FAILURE, error=str(e))

        if quote is None:
            logger.warning(f"No price found for route {route.id} ({route.display_name})")
            self.registry.mark_polled(route.id, self.clock())
            return CycleResult(route.id, CycleOutcome.NO_QUOTE)

        self.history.append(PriceObservation(
            route_id=route.id,
            price=quote.price,
            currency=quote.currency,
            observed_at=quote.retrieved_at,
            offer_details=quote.offer_details.to_dict() if quote.offer_details else None,
        ))

        # The average includes the observation just recorded
        average = self.history.average_price(route.id)
        decision = evaluate_price(quote.price, average, route.threshold_percent)

        alert = None
        if decision.should_alert:
            alert = self.alerts.append(PriceAlert(
                route_id=route.id,
                old_price=quantize_money(decision.average_price),
                new_price=quote.price,
                percent_change=quantize_money(decision.percent_change),
                currency=quote.currency,
                alerted_at=self.clock(),
            ))
            logger.info(
                f"✅ Price alert for {route.display_name}: {quote.price} {quote.currency} "
                f"({decision.percent_change:.1f}% vs average {decision.average_price:.2f})"
            )

        self.registry.mark_polled(route.id, self.clock())

        return CycleResult(
            route.id,
            CycleOutcome.ALERTED if alert else CycleOutcome.RECORDED,
            price=quote.price,
            alert=alert,
        )

    def _stamp_after_error(self, route: TrackedRoute) -> None:
        try:
            self.registry.mark_polled(route.id, self.clock())
        except SQLAlchemyError as e:
            logger.error(f"Could not stamp route {route.id} after failed cycle: {e}")
