"""Reservation domain models.

Wire records are validated into pydantic models at the repository
boundary. A missing or null reservationStatus becomes ``pre`` there, so
the rest of the core only ever sees the three canonical statuses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ReservationStatus(str, Enum):
    PRE = "pre"
    CONFIRMED = "confirmed"
    FLAGGED = "flagged"


# Statuses that hold the room+day slot exclusively.
OCCUPYING_STATUSES = frozenset({ReservationStatus.CONFIRMED, ReservationStatus.FLAGGED})

RESERVATION_TYPES = ("event", "assembly", "disassembly", "others")

Role = Literal["admin", "staff"]


def normalize_username(username: str | None) -> str:
    """Canonical form for case-insensitive author comparisons."""
    return (username or "").strip().lower()


def parse_day(value: Any) -> date:
    """Parse a wire day value into a date.

    Accepts ``YYYY-MM-DD`` strings, ISO datetimes at UTC midnight
    (``2025-06-10T00:00:00.000Z``), dates and datetimes. Only the calendar
    day is significant.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"cannot interpret {type(value).__name__} as a day")


def day_key(day: date) -> str:
    """YYYY-MM-DD key used in slot keys and notifications."""
    return day.isoformat()


def _parse_dates(value: Any) -> list[date]:
    if value is None:
        return []
    if isinstance(value, (str, date)):
        value = [value]
    return [parse_day(item) for item in value]


class Reservation(BaseModel):
    """A reservation as returned by the server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("_id", "id"), serialization_alias="_id")
    room: str
    dates: list[date]
    event: str = ""
    author: str = ""
    reservation_type: str | None = Field(default=None, alias="type")
    reservation_status: ReservationStatus = Field(
        default=ReservationStatus.PRE,
        validation_alias=AliasChoices("reservationStatus", "reservation_status"),
        serialization_alias="reservationStatus",
    )
    notes: str = ""
    admin_notes: str = Field(
        default="",
        validation_alias=AliasChoices("adminNotes", "admin_notes"),
        serialization_alias="adminNotes",
    )
    reservation_number: str | None = Field(default=None, alias="reservationNumber")
    nif: str | None = None
    producer_name: str | None = Field(default=None, alias="producerName")
    email: str | None = None
    contact: str | None = None
    responsable_person: str | None = Field(default=None, alias="responsablePerson")
    event_classification: str | None = Field(default=None, alias="eventClassification")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("reservation_status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> Any:
        if value is None or value == "":
            return ReservationStatus.PRE
        return value

    @field_validator("notes", "admin_notes", "event", "author", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("dates", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> list[date]:
        return _parse_dates(value)

    @field_validator("dates")
    @classmethod
    def _unique_sorted_dates(cls, value: list[date]) -> list[date]:
        if not value:
            raise ValueError("a reservation needs at least one date")
        return sorted(set(value))

    @property
    def is_occupying(self) -> bool:
        return self.reservation_status in OCCUPYING_STATUSES

    @property
    def is_pre(self) -> bool:
        return self.reservation_status is ReservationStatus.PRE

    @property
    def day_keys(self) -> list[str]:
        return [day_key(d) for d in self.dates]

    @property
    def is_multi_day(self) -> bool:
        return len(self.dates) > 1

    def is_authored_by(self, username: str | None) -> bool:
        wanted = normalize_username(username)
        return bool(wanted) and normalize_username(self.author) == wanted

    def with_status(self, status: ReservationStatus) -> "Reservation":
        return self.model_copy(update={"reservation_status": status})

    def without_day(self, day: date) -> "Reservation":
        """Copy of this reservation with ``day`` removed.

        Raises:
            ValueError: If the day is not part of the reservation, or it is
                the only remaining day (delete the reservation instead).
        """
        if day not in self.dates:
            raise ValueError(f"{day_key(day)} is not a day of reservation {self.id}")
        if len(self.dates) == 1:
            raise ValueError("cannot remove the last day; delete the reservation instead")
        return self.model_copy(update={"dates": [d for d in self.dates if d != day]})


class NewReservation(BaseModel):
    """Creation payload. The author is assigned server-side."""

    model_config = ConfigDict(populate_by_name=True)

    room: str = Field(min_length=1)
    event: str = Field(min_length=1)
    dates: list[date]
    reservation_type: str = Field(default="event", alias="type")
    notes: str = ""
    nif: str | None = None
    producer_name: str | None = Field(default=None, alias="producerName")
    email: str | None = None
    contact: str | None = None
    responsable_person: str | None = Field(default=None, alias="responsablePerson")
    event_classification: str | None = Field(default=None, alias="eventClassification")

    @field_validator("room", "event")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("dates", mode="before")
    @classmethod
    def _coerce_dates(cls, value: Any) -> list[date]:
        return _parse_dates(value)

    @field_validator("dates")
    @classmethod
    def _unique_sorted_dates(cls, value: list[date]) -> list[date]:
        if not value:
            raise ValueError("pick at least one day")
        return sorted(set(value))

    @field_validator("reservation_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in RESERVATION_TYPES:
            raise ValueError(f"type must be one of {', '.join(RESERVATION_TYPES)}")
        return value

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True)
        payload["dates"] = [f"{day_key(d)}T00:00:00.000Z" for d in self.dates]
        return payload


class HistoryEvent(BaseModel):
    """One audit entry for a room+day."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    timestamp: datetime
    user: str | None = None
    action: str
    from_status: str | None = Field(default=None, alias="fromStatus")
    to_status: str | None = Field(default=None, alias="toStatus")
    event: str | None = None
    reservation_id: str | None = Field(default=None, alias="reservationId")


class ServerDayClearEvent(BaseModel):
    """A day-clear event from the server-side notification feed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    room: str
    day: date = Field(validation_alias=AliasChoices("date", "day", "dayKey"))
    created_at: datetime | None = Field(default=None, alias="createdAt")
    message: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("day", mode="before")
    @classmethod
    def _coerce_day(cls, value: Any) -> date:
        return parse_day(value)


@dataclass(frozen=True)
class DayClearNotification:
    """A room+day that became free for a user holding a pre-reservation."""

    id: str
    room: str
    day_key: str
    date_iso: str
    message: str
    created_at: datetime
    source: Literal["client", "server"] = "client"
    server_event_id: str | None = None

    @property
    def slot(self) -> str:
        return f"{self.room}|{self.day_key}"


@dataclass(frozen=True)
class SessionUser:
    """The authenticated viewer the engine works on behalf of."""

    username: str
    role: Role = "staff"

    @property
    def key(self) -> str:
        return normalize_username(self.username)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def unique_by_id(reservations: Iterable[Reservation]) -> list[Reservation]:
    """Drop repeated records (overlapping fetch chunks), keeping the last seen."""
    by_id: dict[str, Reservation] = {}
    for reservation in reservations:
        by_id[reservation.id] = reservation
    return list(by_id.values())
