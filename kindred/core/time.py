from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.
    All persisted timestamps are naive UTC so MySQL and SQLite compare the same way.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """
    Render a datetime as an ISO 8601 string in UTC.
    Naive values are treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def millis_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
