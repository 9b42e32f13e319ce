"""Day-clear detection.

Compares the occupancy seen on the previous pass with a freshly fetched
reservation set. A slot that was occupied and is now free produces one
notification for the viewing user, provided they hold a pre-reservation
on it and did not occupy it themselves.

Every fetch source (month view, focused poll, wide and horizon sweeps)
feeds the same detector. ``notified_days`` is what keeps overlapping
sources from notifying the same clearing twice.

``process`` never awaits, so a pass cannot interleave with another one
on the event loop.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Iterable

from roomcal.infra.config import DEFAULT_NOTIFICATION_TEMPLATE
from roomcal.infra.time import epoch_millis, utc_now
from roomcal.observability.logging import get_logger

from .models import DayClearNotification, Reservation, normalize_username
from .occupancy import (
    build_snapshot,
    occupied_keys,
    occupying_authors,
    slot_in_window,
    split_slot_key,
    user_pre_keys,
)
from .ranges import DateWindow

logger = get_logger(__name__)


def format_clear_message(template: str, room: str, dkey: str) -> str:
    """Render a notification message; falls back to the default template."""
    day = date.fromisoformat(dkey)
    fields = {"room": room, "day": day.day, "month": day.month, "year": day.year}
    try:
        return template.format(**fields)
    except (KeyError, IndexError, ValueError):
        logger.warning(
            "invalid notification template, using default",
            extra={"extra_fields": {"template_len": len(template)}},
        )
        return DEFAULT_NOTIFICATION_TEMPLATE.format(**fields)


class DayClearDetector:
    """Per-session occupancy diffing with one-time notifications."""

    def __init__(
        self,
        username: str,
        *,
        seen_keys: Iterable[str] = (),
        message_template: str = DEFAULT_NOTIFICATION_TEMPLATE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._username = normalize_username(username)
        self._template = message_template
        self._clock = clock
        self._previous_occupied: set[str] = set()
        self._previous_authors: dict[str, frozenset[str]] = {}
        self._notified: set[str] = set(seen_keys)

    @property
    def username(self) -> str:
        return self._username

    @property
    def notified_days(self) -> frozenset[str]:
        return frozenset(self._notified)

    @property
    def previous_occupied(self) -> frozenset[str]:
        return frozenset(self._previous_occupied)

    def seed(self, keys: Iterable[str]) -> None:
        """Treat ``keys`` as already notified (e.g. restored from storage)."""
        self._notified.update(keys)

    def mark_notified(self, key: str) -> bool:
        """Record ``key`` as notified. Returns False if it already was."""
        if key in self._notified:
            return False
        self._notified.add(key)
        return True

    def reset(self, username: str | None = None) -> None:
        """Forget all state; used on logout or identity change."""
        if username is not None:
            self._username = normalize_username(username)
        self._previous_occupied.clear()
        self._previous_authors.clear()
        self._notified.clear()

    def process(
        self,
        reservations: Iterable[Reservation],
        window: DateWindow | None = None,
    ) -> list[DayClearNotification]:
        """Run one detection pass and return the new notifications.

        With ``window`` only slots whose day falls inside it are compared or
        replaced. A fetch for a window omits reservations that only touch days
        outside it, so occupancy seen there is partial and is ignored.
        Without ``window`` the whole set is authoritative.
        """
        records = list(reservations)
        snapshot = build_snapshot(records)
        current_occupied = occupied_keys(snapshot)
        current_authors = occupying_authors(snapshot)
        candidates = user_pre_keys(records, self._username) if self._username else set()
        if window is not None:
            current_occupied = {k for k in current_occupied if slot_in_window(k, window)}
            current_authors = {k: v for k, v in current_authors.items() if k in current_occupied}
            candidates = {k for k in candidates if slot_in_window(k, window)}

        notifications: list[DayClearNotification] = []
        for key in sorted(candidates):
            if key not in self._previous_occupied or key in current_occupied:
                continue
            if key in self._notified:
                continue
            if self._username in self._previous_authors.get(key, frozenset()):
                # the viewer vacated it themselves
                continue
            self._notified.add(key)
            notifications.append(self._build_notification(key))

        self._replace_previous(current_occupied, current_authors, window)

        if notifications:
            logger.info(
                "day clear detected",
                extra={"extra_fields": {
                    "count": len(notifications),
                    "slots": [n.slot for n in notifications],
                }},
            )
        return notifications

    def _replace_previous(
        self,
        occupied: set[str],
        authors: dict[str, frozenset[str]],
        window: DateWindow | None,
    ) -> None:
        if window is None:
            self._previous_occupied = set(occupied)
            self._previous_authors = dict(authors)
            return

        kept = {k for k in self._previous_occupied if not slot_in_window(k, window)}
        self._previous_occupied = kept | occupied
        self._previous_authors = {
            k: v for k, v in self._previous_authors.items() if k in kept
        }
        self._previous_authors.update(authors)

    def _build_notification(self, key: str) -> DayClearNotification:
        room, dkey = split_slot_key(key)
        now = self._clock()
        return DayClearNotification(
            id=f"{key}|{epoch_millis(now)}",
            room=room,
            day_key=dkey,
            date_iso=f"{dkey}T00:00:00.000Z",
            message=format_clear_message(self._template, room, dkey),
            created_at=now,
        )
