"""Reservation status transitions.

States: pre, confirmed, flagged (flagged = confirmed and paid).

Allowed:
- pre -> confirmed        only if no other occupying reservation holds the
                          room+day (the server decides; 409 otherwise)
- confirmed <-> flagged   same slot holder, no conflict possible
- confirmed/flagged -> pre  always; frees the slot

Protocol: apply the new status to the local store, call the server, and on
success re-sync the viewed range without the cache. On failure restore the
previous record. The server is the source of truth after every mutation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from roomcal.infra.repository_client import (
    ConflictError,
    RepositoryError,
    ReservationRepositoryClient,
)
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context
from roomcal.sync.store import ReservationStore

from .models import Reservation, ReservationStatus
from .occupancy import find_occupant

logger = get_logger(__name__)

_PRE = ReservationStatus.PRE
_CONFIRMED = ReservationStatus.CONFIRMED
_FLAGGED = ReservationStatus.FLAGGED

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    _PRE: frozenset({_CONFIRMED}),
    _CONFIRMED: frozenset({_FLAGGED, _PRE}),
    _FLAGGED: frozenset({_CONFIRMED, _PRE}),
}

CONFLICT_MESSAGE = "Another confirmed/flagged reservation exists for this room and day"
FAILURE_MESSAGE = "Could not update the reservation status"

Resync = Callable[[Reservation], Awaitable[None]]


class InvalidTransitionError(ValueError):
    """Raised for a status change the state machine does not allow."""

    def __init__(self, current: ReservationStatus, requested: ReservationStatus) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"cannot change status from {current.value} to {requested.value}")


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    reservation: Reservation
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.UNCHANGED)


def check_transition(current: ReservationStatus, requested: ReservationStatus) -> None:
    if current == requested:
        return
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, requested)


def local_occupant(
    store: ReservationStore,
    reservation: Reservation,
) -> Reservation | None:
    """Another occupying reservation on any of ``reservation``'s room+days."""
    records = store.all()
    for day in reservation.dates:
        occupant = find_occupant(records, reservation.room, day, exclude_id=reservation.id)
        if occupant is not None:
            return occupant
    return None


class StatusTransitionEngine:
    """Optimistic status changes against the local store and the server."""

    def __init__(
        self,
        client: ReservationRepositoryClient,
        store: ReservationStore,
        resync: Resync,
    ) -> None:
        self._client = client
        self._store = store
        self._resync = resync

    async def change_status(
        self,
        reservation_id: str,
        next_status: ReservationStatus,
    ) -> TransitionResult:
        """Move a reservation in the local view to ``next_status``.

        Raises:
            KeyError: If the reservation is not in the local view.
            InvalidTransitionError: If the state machine forbids the change.
        """
        current = self._store.get(reservation_id)
        if current is None:
            raise KeyError(reservation_id)

        check_transition(current.reservation_status, next_status)
        if current.reservation_status == next_status:
            return TransitionResult(TransitionOutcome.UNCHANGED, current)

        log_ctx = safe_log_context(
            reservation_id=reservation_id,
            room=current.room,
            from_status=current.reservation_status.value,
            to_status=next_status.value,
        )

        if current.is_pre and next_status is _CONFIRMED:
            occupant = local_occupant(self._store, current)
            if occupant is not None:
                logger.info(
                    "status change blocked by local occupant",
                    extra={"extra_fields": {**log_ctx, "occupant_id": occupant.id}},
                )
                return TransitionResult(TransitionOutcome.CONFLICT, current, CONFLICT_MESSAGE)

        optimistic = current.with_status(next_status)
        previous = self._store.apply(optimistic)

        try:
            await self._client.update_status(reservation_id, next_status)
        except ConflictError:
            self._store.restore(reservation_id, previous)
            logger.warning("status change rejected: conflict", extra={"extra_fields": log_ctx})
            return TransitionResult(TransitionOutcome.CONFLICT, current, CONFLICT_MESSAGE)
        except RepositoryError as exc:
            self._store.restore(reservation_id, previous)
            logger.error(
                "status change failed",
                extra={"extra_fields": {**log_ctx, "status_code": str(exc.status_code)}},
            )
            return TransitionResult(TransitionOutcome.FAILED, current, FAILURE_MESSAGE)

        logger.info("status change applied", extra={"extra_fields": log_ctx})
        try:
            await self._resync(optimistic)
        except RepositoryError:
            logger.exception("re-sync after status change failed", extra={"extra_fields": log_ctx})

        return TransitionResult(
            TransitionOutcome.APPLIED,
            self._store.get(reservation_id) or optimistic,
        )

    async def toggle_flag(self, reservation_id: str, flagged: bool) -> TransitionResult:
        """Mark a confirmed reservation as paid (flagged) or back to confirmed."""
        target = _FLAGGED if flagged else _CONFIRMED
        current = self._store.get(reservation_id)
        if current is not None and current.is_pre:
            raise InvalidTransitionError(current.reservation_status, target)
        return await self.change_status(reservation_id, target)
