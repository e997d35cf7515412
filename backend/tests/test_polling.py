"""Tests for the price polling cycle and tick."""
import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from fare_tracker.models import PriceObservation
from fare_tracker.repositories import SqlPriceHistoryStore
from fare_tracker.services.errors import TransientProviderError, CircuitOpenError
from fare_tracker.services.polling import PricePollingService, CycleOutcome
from fare_tracker.services.price_provider import PriceProvider, PriceQuote

NOW = datetime(2030, 3, 1, 12, 0, 0)


def quote(price, retrieved_at=NOW):
    return PriceQuote(price=Decimal(str(price)), currency="USD", retrieved_at=retrieved_at, carrier_code="NZ")


class FakeProvider(PriceProvider):
    """Returns (or raises) a configured result per origin airport."""
    name = "fake"

    def __init__(self, default=None, by_origin=None):
        self.default = default
        self.by_origin = by_origin or {}
        self.calls = []

    async def quote_route(self, origin, destination, target_date, flexibility_days, max_stops):
        self.calls.append((origin, destination, target_date, flexibility_days, max_stops))
        result = self.by_origin.get(origin, self.default)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def make_service(registry, history, alert_store):
    def _make_service(provider, **kwargs):
        kwargs.setdefault("clock", lambda: NOW)
        return PricePollingService(
            registry=registry,
            history=kwargs.pop("history", history),
            alerts=alert_store,
            provider=provider,
            **kwargs,
        )
    return _make_service


def seed_history(history, route_id, prices):
    for i, price in enumerate(prices):
        history.append(PriceObservation(
            route_id=route_id,
            price=Decimal(str(price)),
            currency="USD",
            observed_at=NOW - timedelta(hours=len(prices) - i),
        ))


class TestCycle:
    @pytest.mark.asyncio
    async def test_drop_below_average_raises_alert(self, make_service, make_route, registry, history, alert_store):
        route = make_route(threshold_percent=Decimal("5"))
        seed_history(history, route.id, [500, 510, 490, 505, 495])
        service = make_service(FakeProvider(quote(470)))

        summary = await service.run_tick(NOW)

        assert summary == {"due": 1, "polled": 1, "skipped": 0, "no_quote": 0, "alerts": 1, "errors": 0}
        alerts = alert_store.list_for_route(route.id)
        assert len(alerts) == 1
        # Average includes the new observation: (2500 + 470) / 6 = 495
        assert alerts[0].old_price == Decimal("495")
        assert alerts[0].new_price == Decimal("470")
        assert alerts[0].percent_change == Decimal("-5.05")
        assert alerts[0].is_processed is False

        latest = history.latest(route.id)
        assert latest.price == Decimal("470")
        assert latest.observed_at == NOW
        assert len(history.list_for_route(route.id)) == 6
        assert registry.get(route.id).last_polled_at == NOW

    @pytest.mark.asyncio
    async def test_price_above_threshold_records_only(self, make_service, make_route, history, alert_store):
        route = make_route()
        seed_history(history, route.id, [500, 500])
        service = make_service(FakeProvider(quote(480)))

        result = await service.poll_route(route, NOW)

        assert result.outcome == CycleOutcome.RECORDED
        assert result.price == Decimal("480")
        assert alert_store.list_for_route(route.id) == []
        assert len(history.list_for_route(route.id)) == 3

    @pytest.mark.asyncio
    async def test_first_observation_never_alerts(self, make_service, make_route, alert_store):
        route = make_route()
        service = make_service(FakeProvider(quote(100)))

        result = await service.poll_route(route, NOW)

        assert result.outcome == CycleOutcome.RECORDED
        assert alert_store.list_unprocessed() == []

    @pytest.mark.asyncio
    async def test_passes_route_search_parameters(self, make_service, make_route):
        route = make_route(date_flexibility_days=2, max_stops=1)
        provider = FakeProvider(quote(500))

        await make_service(provider).poll_route(route, NOW)

        assert provider.calls == [("AKL", "SYD", date(2030, 6, 15), 2, 1)]

    @pytest.mark.asyncio
    async def test_offer_details_stored(self, make_service, make_route, history):
        route = make_route()
        q = quote(500)
        q.offer_details = MagicMock()
        q.offer_details.to_dict.return_value = {"segments": []}

        await make_service(FakeProvider(q)).poll_route(route, NOW)

        assert history.latest(route.id).offer_details == {"segments": []}


class TestNoQuote:
    @pytest.mark.asyncio
    async def test_no_offers_stamps_without_recording(self, make_service, make_route, registry, history, alert_store):
        route = make_route()
        service = make_service(FakeProvider(None))

        summary = await service.run_tick(NOW)

        assert summary["no_quote"] == 1
        assert summary["polled"] == 1
        assert registry.get(route.id).last_polled_at == NOW
        assert history.list_for_route(route.id) == []
        assert alert_store.list_for_route(route.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        TransientProviderError("HTTP 503", status_code=503),
        CircuitOpenError("circuit open"),
    ])
    async def test_provider_failure_stamps(self, make_service, make_route, registry, history, error):
        route = make_route()
        service = make_service(FakeProvider(error))

        result = await service.poll_route(route, NOW)

        assert result.outcome == CycleOutcome.PROVIDER_FAILURE
        assert registry.get(route.id).last_polled_at == NOW
        assert history.list_for_route(route.id) == []


class TestSkips:
    @pytest.mark.asyncio
    async def test_departed_route_not_polled_or_stamped(self, make_service, make_route, registry):
        route = make_route(departure_date=date(2030, 2, 28))
        provider = FakeProvider(quote(100))

        summary = await make_service(provider).run_tick(NOW)

        assert summary["skipped"] == 1
        assert provider.calls == []
        assert registry.get(route.id).last_polled_at is None

    @pytest.mark.asyncio
    async def test_departing_today_is_polled(self, make_service, make_route):
        route = make_route(departure_date=NOW.date())
        result = await make_service(FakeProvider(quote(100))).poll_route(route, NOW)
        assert result.outcome == CycleOutcome.RECORDED

    @pytest.mark.asyncio
    async def test_not_due_route_not_polled(self, make_service, make_route):
        make_route(last_polled_at=NOW - timedelta(minutes=5))
        provider = FakeProvider(quote(100))

        summary = await make_service(provider).run_tick(NOW)

        assert summary["due"] == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_in_flight_route_is_skipped(self, make_service, make_route):
        route = make_route()
        release = asyncio.Event()

        class SlowProvider(FakeProvider):
            async def quote_route(self, *args):
                await release.wait()
                return quote(500)

        service = make_service(SlowProvider())
        first = asyncio.create_task(service.poll_route(route, NOW))
        await asyncio.sleep(0)

        second = await service.poll_route(route, NOW)
        assert second.outcome == CycleOutcome.SKIPPED_IN_FLIGHT
        assert service.in_flight == {route.id}

        release.set()
        assert (await first).outcome == CycleOutcome.RECORDED
        assert service.in_flight == set()

    @pytest.mark.asyncio
    async def test_shutdown_skips_new_cycles(self, make_service, make_route):
        route = make_route()
        service = make_service(FakeProvider(quote(100)))
        service.begin_shutdown()

        result = await service.poll_route(route, NOW)
        assert result.outcome == CycleOutcome.SKIPPED_SHUTDOWN

        service.resume()
        assert (await service.poll_route(route, NOW)).outcome == CycleOutcome.RECORDED


class TestErrorPolicy:
    @pytest.mark.asyncio
    async def test_unexpected_error_stamps_by_default(self, make_service, make_route, registry):
        route = make_route()
        service = make_service(FakeProvider(RuntimeError("bug")))

        result = await service.poll_route(route, NOW)

        assert result.outcome == CycleOutcome.ERROR
        assert "bug" in result.error
        assert registry.get(route.id).last_polled_at == NOW

    @pytest.mark.asyncio
    async def test_unexpected_error_without_stamp(self, make_service, make_route, registry):
        route = make_route()
        service = make_service(FakeProvider(RuntimeError("bug")), stamp_on_error=False)

        result = await service.poll_route(route, NOW)

        assert result.outcome == CycleOutcome.ERROR
        assert registry.get(route.id).last_polled_at is None

    @pytest.mark.asyncio
    async def test_persistence_failure_leaves_route_unstamped(self, make_service, make_route, registry, session_factory):
        class BrokenHistory(SqlPriceHistoryStore):
            def append(self, observation):
                raise OperationalError("INSERT INTO price_observations", {}, Exception("database is locked"))

        route = make_route()
        service = make_service(FakeProvider(quote(500)), history=BrokenHistory(session_factory))

        summary = await service.run_tick(NOW)

        assert summary["errors"] == 1
        assert registry.get(route.id).last_polled_at is None
        assert [r.id for r in registry.due_for_polling(NOW)] == [route.id]

    @pytest.mark.asyncio
    async def test_failing_route_does_not_block_others(self, make_service, make_route, registry, history):
        broken = make_route(origin="WLG")
        healthy = make_route(origin="AKL")
        provider = FakeProvider(quote(500), by_origin={"WLG": RuntimeError("bug")})

        summary = await make_service(provider).run_tick(NOW)

        assert summary["due"] == 2
        assert summary["polled"] == 1
        assert summary["errors"] == 1
        assert history.latest(healthy.id).price == Decimal("500")
        assert registry.get(broken.id).last_polled_at == NOW

    @pytest.mark.asyncio
    async def test_due_query_failure_is_contained(self, history, alert_store):
        registry = MagicMock()
        registry.due_for_polling.side_effect = OperationalError("SELECT", {}, Exception("gone"))
        service = PricePollingService(registry, history, alert_store, FakeProvider(None), clock=lambda: NOW)

        summary = await service.run_tick()

        assert summary["errors"] == 1
        assert summary["due"] == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self, make_service, make_route):
        for origin in ["AKL", "WLG", "CHC", "ZQN", "DUD"]:
            make_route(origin=origin)

        active = 0
        peak = 0

        class CountingProvider(FakeProvider):
            async def quote_route(self, *args):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return quote(500)

        summary = await make_service(CountingProvider(), max_concurrency=2).run_tick(NOW)

        assert summary["polled"] == 5
        assert peak == 2


class TestPollRouteNow:
    @pytest.mark.asyncio
    async def test_polls_single_route(self, make_service, make_route, history):
        route = make_route()
        result = await make_service(FakeProvider(quote(500))).poll_route_now(route.id)

        assert result.outcome == CycleOutcome.RECORDED
        assert history.latest(route.id).price == Decimal("500")

    @pytest.mark.asyncio
    async def test_unknown_route(self, make_service):
        assert await make_service(FakeProvider(None)).poll_route_now("missing") is None
