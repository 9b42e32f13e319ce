"""Occupancy snapshots derived from a reservation set.

A room+day slot is occupied when some reservation on it holds an
occupying status (confirmed or flagged). Pre-reservations never occupy;
any number of them may sit on a slot, occupied or not.

Slot keys are ``"<room>|<YYYY-MM-DD>"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from .models import Reservation, day_key, normalize_username
from .ranges import DateWindow


@dataclass(frozen=True)
class SlotOccupancy:
    occupied: bool
    authors: frozenset[str]


OccupancySnapshot = dict[str, SlotOccupancy]


def slot_key(room: str, day: date | str) -> str:
    key = day if isinstance(day, str) else day_key(day)
    return f"{room}|{key}"


def split_slot_key(key: str) -> tuple[str, str]:
    room, _, dkey = key.rpartition("|")
    return room, dkey


def slot_in_window(key: str, window: DateWindow) -> bool:
    return window.contains(date.fromisoformat(split_slot_key(key)[1]))


def build_snapshot(reservations: Iterable[Reservation]) -> OccupancySnapshot:
    """Map every slot touched by ``reservations`` to its occupancy.

    ``authors`` holds the lowercase usernames of the occupying records only.
    """
    occupied: dict[str, bool] = {}
    authors: dict[str, set[str]] = {}
    for reservation in reservations:
        for day in reservation.dates:
            key = slot_key(reservation.room, day)
            occupied.setdefault(key, False)
            authors.setdefault(key, set())
            if reservation.is_occupying:
                occupied[key] = True
                if reservation.author:
                    authors[key].add(normalize_username(reservation.author))

    return {
        key: SlotOccupancy(occupied=is_occupied, authors=frozenset(authors[key]))
        for key, is_occupied in occupied.items()
    }


def occupied_keys(snapshot: OccupancySnapshot) -> set[str]:
    return {key for key, slot in snapshot.items() if slot.occupied}


def occupying_authors(snapshot: OccupancySnapshot) -> dict[str, frozenset[str]]:
    return {key: slot.authors for key, slot in snapshot.items() if slot.occupied}


def user_pre_keys(reservations: Iterable[Reservation], username: str) -> set[str]:
    """Slots where ``username`` holds a pre-reservation."""
    keys: set[str] = set()
    for reservation in reservations:
        if reservation.is_pre and reservation.is_authored_by(username):
            keys.update(slot_key(reservation.room, d) for d in reservation.dates)
    return keys


def blocked_pre_keys(reservations: Iterable[Reservation], username: str) -> set[str]:
    """The user's pre slots currently occupied by someone else."""
    records = list(reservations)
    snapshot = build_snapshot(records)
    me = normalize_username(username)
    blocked: set[str] = set()
    for key in user_pre_keys(records, username):
        slot = snapshot.get(key)
        if slot is not None and slot.occupied and slot.authors != {me}:
            blocked.add(key)
    return blocked


def find_occupant(
    reservations: Iterable[Reservation],
    room: str,
    day: date,
    exclude_id: str | None = None,
) -> Reservation | None:
    """First occupying reservation on ``room``/``day`` other than ``exclude_id``."""
    for reservation in reservations:
        if reservation.id == exclude_id or reservation.room != room:
            continue
        if reservation.is_occupying and day in reservation.dates:
            return reservation
    return None


def occupying_conflicts(reservations: Iterable[Reservation]) -> dict[str, list[str]]:
    """Slots held by more than one occupying reservation, with their ids.

    The server enforces the single-occupant rule; a non-empty result means
    the local view is inconsistent and is worth logging.
    """
    holders: dict[str, list[str]] = {}
    for reservation in reservations:
        if not reservation.is_occupying:
            continue
        for day in reservation.dates:
            holders.setdefault(slot_key(reservation.room, day), []).append(reservation.id)
    return {key: ids for key, ids in holders.items() if len(ids) > 1}
