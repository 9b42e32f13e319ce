"""Who may edit or delete a reservation.

Admins may act on any reservation. Staff may act only on reservations
they authored (case-insensitive username match). Admin notes are
admin-only.
"""

from __future__ import annotations

from .models import Reservation, SessionUser


class PermissionDeniedError(Exception):
    """Raised when the session user may not perform an action."""

    def __init__(self, action: str, reservation_id: str) -> None:
        self.action = action
        self.reservation_id = reservation_id
        super().__init__(f"not allowed to {action} reservation {reservation_id}")


def can_edit(user: SessionUser, reservation: Reservation) -> bool:
    return user.is_admin or reservation.is_authored_by(user.username)


def can_delete(user: SessionUser, reservation: Reservation) -> bool:
    return can_edit(user, reservation)


def require_edit(user: SessionUser, reservation: Reservation, *, admin_notes: bool = False) -> None:
    if admin_notes and not user.is_admin:
        raise PermissionDeniedError("edit admin notes of", reservation.id)
    if not can_edit(user, reservation):
        raise PermissionDeniedError("edit", reservation.id)


def require_delete(user: SessionUser, reservation: Reservation) -> None:
    if not can_delete(user, reservation):
        raise PermissionDeniedError("delete", reservation.id)
