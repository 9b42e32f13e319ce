"""Shared test helper functions for roomcal tests.

Plain functions and small fakes importable from any test module. These are
NOT fixtures.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator

import httpx

from roomcal.domain.models import Reservation
from roomcal.infra.repository_client import ReservationRepositoryClient

API_BASE = "http://test/api"


def wire_day(day: date) -> str:
    return f"{day.isoformat()}T00:00:00.000Z"


def reservation_payload(
    rid: str,
    room: str = "room 1",
    dates: list[date] | None = None,
    *,
    author: str = "alice",
    status: str | None = "pre",
    event: str = "Conference",
    **extra: Any,
) -> dict[str, Any]:
    """Wire-format reservation record."""
    payload: dict[str, Any] = {
        "_id": rid,
        "room": room,
        "dates": [wire_day(d) for d in (dates or [date(2025, 6, 10)])],
        "event": event,
        "author": author,
        "type": "event",
        "reservationStatus": status,
        "notes": "",
        "adminNotes": "",
    }
    payload.update(extra)
    return payload


def make_reservation(
    rid: str,
    room: str = "room 1",
    dates: list[date] | None = None,
    *,
    author: str = "alice",
    status: str | None = "pre",
    **extra: Any,
) -> Reservation:
    return Reservation.model_validate(
        reservation_payload(rid, room, dates, author=author, status=status, **extra)
    )


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """utc_now replacement advanced by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """asyncio.sleep replacement: records the delay and only yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, *, max_steps: int = 2000) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(max_steps):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@asynccontextmanager
async def api_client(app, **options: Any) -> AsyncIterator[ReservationRepositoryClient]:
    """Repository client wired to an in-process ASGI app."""
    options.setdefault("sleep", RecordingSleep())
    options.setdefault("jitter", lambda low, high: 0.0)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    try:
        yield ReservationRepositoryClient(API_BASE, http_client=http, **options)
    finally:
        await http.aclose()
