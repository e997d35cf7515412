"""Time and identifier helpers shared by models, repositories and services."""

import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime.

    All timestamps are stored naive-in-UTC so SQLite and PostgreSQL compare
    them the same way.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())
