"""UTC time helpers shared by the store and the worker."""

from datetime import datetime, timezone
from typing import Optional

# Fixed-width so that lexical order in SQLite equals chronological order.
DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Render an aware (or naive UTC) datetime for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)
