from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from fare_tracker.config import get_settings
import logging
import os

logger = logging.getLogger(__name__)
settings = get_settings()

db_url = settings.database_url


def build_engine(url: str, **kwargs):
    """Create an engine, enabling foreign keys when the backend is SQLite."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    new_engine = create_engine(url, connect_args=connect_args, **kwargs)

    if url.startswith("sqlite"):
        # Without this, ON DELETE CASCADE doesn't work!
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_session_factory(bind) -> sessionmaker:
    # expire_on_commit=False keeps returned rows readable after the
    # repository's short-lived session closes.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(db_url)

SessionLocal = build_session_factory(engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None) -> None:
    """Create any missing tables (development / SQLite only)."""
    bind = bind or engine
    db_path = bind.url.database
    if bind.url.get_backend_name() == "sqlite" and db_path and db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    # Import models so they are registered on Base.metadata
    import fare_tracker.models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables ensured")
