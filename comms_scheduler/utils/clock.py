from datetime import datetime, timezone
from typing import Callable

# Timestamps are stored as naive UTC so SQLite and PostgreSQL compare them the same way
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an incoming (possibly offset-aware) timestamp to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
