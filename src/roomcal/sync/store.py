"""In-memory reservation list for the month on screen.

Holds the records the presentation layer renders, plus optimistic copies
applied ahead of server confirmation. ``apply`` returns the record it
replaced so the caller can roll back with ``restore``.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable

from roomcal.domain.models import Reservation
from roomcal.domain.ranges import DateWindow


class ReservationStore:
    def __init__(self) -> None:
        self._records: dict[str, Reservation] = {}
        self._window: DateWindow | None = None
        self._version = 0

    @property
    def window(self) -> DateWindow | None:
        return self._window

    @property
    def version(self) -> int:
        """Incremented on every change; lets callers detect stale reads."""
        return self._version

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, reservation_id: object) -> bool:
        return reservation_id in self._records

    def all(self) -> list[Reservation]:
        return list(self._records.values())

    def get(self, reservation_id: str) -> Reservation | None:
        return self._records.get(reservation_id)

    def replace_all(self, reservations: Iterable[Reservation], window: DateWindow | None) -> None:
        self._records = {r.id: r for r in reservations}
        self._window = window
        self._version += 1

    def apply(self, reservation: Reservation) -> Reservation | None:
        previous = self._records.get(reservation.id)
        self._records[reservation.id] = reservation
        self._version += 1
        return previous

    def restore(self, reservation_id: str, previous: Reservation | None) -> None:
        if previous is None:
            self._records.pop(reservation_id, None)
        else:
            self._records[reservation_id] = previous
        self._version += 1

    def remove(self, reservation_id: str) -> Reservation | None:
        removed = self._records.pop(reservation_id, None)
        if removed is not None:
            self._version += 1
        return removed

    def on_day(self, room: str, day: date) -> list[Reservation]:
        return [r for r in self._records.values() if r.room == room and day in r.dates]

    def clear(self) -> None:
        self._records.clear()
        self._window = None
        self._version += 1
