"""Live day-clear notification list shared with the presentation layer.

Client-detected and server-sourced notifications land in the same list.
A room+day appears at most once: a server event for a slot that already
has a client notification is attached to it (so dismissing consumes the
server event) instead of creating a second entry.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Iterable

from roomcal.domain.day_clear import format_clear_message
from roomcal.domain.models import DayClearNotification, ServerDayClearEvent, day_key
from roomcal.domain.occupancy import slot_key
from roomcal.infra.config import DEFAULT_NOTIFICATION_TEMPLATE
from roomcal.infra.time import utc_now

Listener = Callable[[list[DayClearNotification]], None]


@dataclass(frozen=True)
class OpenDayRequest:
    """Ask the calendar to navigate to a room+day."""

    room: str
    day: date


class NotificationCenter:
    def __init__(
        self,
        *,
        listener: Listener | None = None,
        message_template: str = DEFAULT_NOTIFICATION_TEMPLATE,
    ) -> None:
        self._items: list[DayClearNotification] = []
        self._listener = listener
        self._template = message_template
        self._open_request: OpenDayRequest | None = None

    @property
    def items(self) -> list[DayClearNotification]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def set_listener(self, listener: Listener | None) -> None:
        self._listener = listener

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener(self.items)

    def has_slot(self, slot: str) -> bool:
        return self._find_slot(slot) is not None

    def _find_slot(self, slot: str) -> int | None:
        for index, item in enumerate(self._items):
            if item.slot == slot:
                return index
        return None

    def add(self, notifications: Iterable[DayClearNotification]) -> list[DayClearNotification]:
        """Append notifications whose room+day is not already listed."""
        added: list[DayClearNotification] = []
        for notification in notifications:
            if self._find_slot(notification.slot) is not None:
                continue
            self._items.append(notification)
            added.append(notification)
        if added:
            self._notify()
        return added

    def merge_server_events(self, events: Iterable[ServerDayClearEvent]) -> list[DayClearNotification]:
        """Fold server feed events into the list.

        Returns:
            Notifications newly added (attachments to existing entries are
            not included).
        """
        added: list[DayClearNotification] = []
        changed = False
        for event in events:
            slot = slot_key(event.room, event.day)
            index = self._find_slot(slot)
            if index is not None:
                current = self._items[index]
                if current.server_event_id is None:
                    self._items[index] = replace(current, server_event_id=event.id)
                    changed = True
                continue
            dkey = day_key(event.day)
            notification = DayClearNotification(
                id=event.id,
                room=event.room,
                day_key=dkey,
                date_iso=f"{dkey}T00:00:00.000Z",
                message=event.message or format_clear_message(self._template, event.room, dkey),
                created_at=event.created_at or utc_now(),
                source="server",
                server_event_id=event.id,
            )
            self._items.append(notification)
            added.append(notification)
            changed = True
        if changed:
            self._notify()
        return added

    def get(self, notification_id: str) -> DayClearNotification | None:
        for item in self._items:
            if item.id == notification_id:
                return item
        return None

    def dismiss(self, notification_id: str) -> DayClearNotification | None:
        """Remove one notification; returns it, or None if unknown."""
        for index, item in enumerate(self._items):
            if item.id == notification_id:
                del self._items[index]
                self._notify()
                return item
        return None

    def dismiss_all(self) -> list[DayClearNotification]:
        removed = self._items
        self._items = []
        if removed:
            self._notify()
        return removed

    def request_open_day(self, room: str, day: date) -> None:
        self._open_request = OpenDayRequest(room=room, day=day)

    def consume_open_day_request(self) -> OpenDayRequest | None:
        """Return the pending navigation request once, then forget it."""
        request, self._open_request = self._open_request, None
        return request

    def clear(self) -> None:
        self._open_request = None
        if self._items:
            self._items = []
            self._notify()
