"""Calendar date windows used by the month view and the sweeps."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta


@dataclass(frozen=True)
class DateWindow:
    """Inclusive range of calendar days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("window end must not precede its start")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_window(year: int, month: int) -> DateWindow:
    last = calendar.monthrange(year, month)[1]
    return DateWindow(date(year, month, 1), date(year, month, last))


def adjacent_months_window(today: date) -> DateWindow:
    """Previous, current and next calendar month around ``today``."""
    prev_year, prev_month = add_months(today.year, today.month, -1)
    next_year, next_month = add_months(today.year, today.month, 1)
    return DateWindow(
        month_window(prev_year, prev_month).start,
        month_window(next_year, next_month).end,
    )


def _add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return day.replace(year=day.year + years, day=28)


def horizon_window(today: date, years: int) -> DateWindow:
    return DateWindow(today, _add_years(today, years))


def chunk_window(window: DateWindow, max_days: int) -> list[DateWindow]:
    """Split a window into contiguous chunks of at most ``max_days`` days.

    Chunks follow yearly boundaries from the window start where possible,
    and never exceed ``max_days``.
    """
    if max_days < 1:
        raise ValueError("max_days must be >= 1")

    chunks: list[DateWindow] = []
    cursor = window.start
    while cursor <= window.end:
        year_end = _add_years(cursor, 1) - timedelta(days=1)
        cap_end = cursor + timedelta(days=max_days - 1)
        chunk_end = min(year_end, cap_end, window.end)
        chunks.append(DateWindow(cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks
