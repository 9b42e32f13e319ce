"""Time utilities for consistent timestamp handling."""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Return the current calendar day in UTC.

    Reservation days are stored as UTC midnights, so "today" for range
    computations is the UTC day.
    """
    return utc_now().date()


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the epoch, used in client notification ids."""
    return int(moment.timestamp() * 1000)
