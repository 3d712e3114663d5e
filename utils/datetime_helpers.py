"""
Datetime helper utilities to ensure consistent timezone handling across the application.

Event and user timestamps are stored as naive UTC datetimes
(DateTime(timezone=False)); the ledger takes epoch seconds.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Formats accepted when a user types an event date
EVENT_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%Y-%m-%d",
)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_event_datetime(raw: str) -> Optional[datetime]:
    """
    Parse a user-typed event date/time as naive UTC.

    Accepts the formats in EVENT_DATETIME_FORMATS plus ISO-8601 strings with an
    offset. Returns None when nothing matches.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None

    for fmt in EVENT_DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    try:
        return ensure_naive_datetime(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError:
        return None


def to_epoch_seconds(dt: datetime) -> int:
    """Naive UTC (or aware) datetime to integer epoch seconds"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def format_event_datetime(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC")
