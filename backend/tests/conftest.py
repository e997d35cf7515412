"""
Test fixtures for Fare Tracker backend tests.
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from fare_tracker.database import Base, build_engine, build_session_factory, get_db
from fare_tracker.main import app
from fare_tracker.models import TrackedRoute
from fare_tracker.repositories import (
    SqlTrackedRouteRegistry,
    SqlPriceHistoryStore,
    SqlPriceAlertStore,
    RecipientRepository,
)


@pytest.fixture(scope="function")
def test_engine():
    """
    In-memory SQLite with foreign keys on.
    StaticPool keeps one connection so every session sees the same database.
    """
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    import fare_tracker.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry(session_factory):
    return SqlTrackedRouteRegistry(session_factory)


@pytest.fixture
def history(session_factory):
    return SqlPriceHistoryStore(session_factory)


@pytest.fixture
def alert_store(session_factory):
    return SqlPriceAlertStore(session_factory)


@pytest.fixture
def recipients(session_factory):
    return RecipientRepository(session_factory)


@pytest.fixture
def make_route(registry):
    """Persist a TrackedRoute with sensible defaults; keyword args override them."""
    def _make_route(**overrides) -> TrackedRoute:
        fields = dict(
            owner_id="user-1",
            origin="AKL",
            destination="SYD",
            departure_date=date(2030, 6, 15),
            date_flexibility_days=3,
            max_stops=None,
            threshold_percent=Decimal("5"),
            polling_interval_minutes=15,
            is_active=True,
            last_polled_at=None,
        )
        fields.update(overrides)
        return registry.add(TrackedRoute(**fields))

    return _make_route


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """
    Override the get_db dependency to use the test database session.
    """
    def _override_get_db():
        try:
            yield db_session
        finally:
            pass

    return _override_get_db


@pytest.fixture(scope="function")
async def client(override_get_db):
    """
    Create an async test client with the database dependency overridden.
    """
    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clear overrides after test
    app.dependency_overrides.clear()

