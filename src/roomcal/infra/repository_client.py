"""Reservation repository client.

Async wrapper around the reservations REST API:
- fetch_range(): cached for a short TTL, concurrent identical calls share
  one request
- 429 responses are retried with exponential backoff plus jitter
- 409 on a status update surfaces as ConflictError
- every successful mutation drops the read cache

One client belongs to one authenticated session. Call invalidate_cache()
whenever the identity changes.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from roomcal.domain.models import (
    HistoryEvent,
    NewReservation,
    Reservation,
    ReservationStatus,
    ServerDayClearEvent,
    day_key,
)
from roomcal.infra.config import SyncSettings
from roomcal.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

RATE_LIMIT_STATUS = 429

_M = TypeVar("_M", bound=BaseModel)


class RepositoryError(Exception):
    """Generic failure talking to the reservations API.

    ``status_code`` is None for transport failures (connection, timeout).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ConflictError(RepositoryError):
    """Another occupying reservation already holds the room+day (HTTP 409)."""


class NotFoundError(RepositoryError):
    """The reservation or event does not exist (HTTP 404)."""


class RateLimitedError(RepositoryError):
    """Still rate-limited (HTTP 429) after the last retry."""


class MalformedResponseError(RepositoryError):
    """A 2xx response whose body is not JSON or not a valid record."""


@dataclass
class _CacheEntry:
    stored_at: float
    reservations: list[Reservation]


def _json_body(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponseError(
            f"{what}: response body is not JSON", status_code=response.status_code
        ) from exc


def _record(model: type[_M], payload: Any, what: str, status_code: int) -> _M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"{what}: malformed record ({exc.error_count()} errors)", status_code=status_code
        ) from exc


def _records(model: type[_M], response: httpx.Response, what: str) -> list[_M]:
    """Validate a JSON list item by item; invalid items are logged and skipped."""
    payload = _json_body(response, what)
    if not isinstance(payload, list):
        raise MalformedResponseError(f"{what}: expected a list", status_code=response.status_code)
    valid: list[_M] = []
    for item in payload:
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            record_id = item.get("_id", item.get("id")) if isinstance(item, dict) else None
            logger.warning(
                "skipping malformed record",
                extra={"extra_fields": safe_log_context(
                    source=what, record_id=record_id, errors=exc.error_count()
                )},
            )
    return valid


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for field in ("detail", "error", "message"):
            if isinstance(payload.get(field), str):
                return payload[field]
    return response.reason_phrase or f"HTTP {response.status_code}"


class ReservationRepositoryClient:
    """Reservations API client with read cache, coalescing and 429 retry.

    Usage:
        client = ReservationRepositoryClient.from_settings(load_settings())
        june = await client.fetch_range(date(2025, 6, 1), date(2025, 6, 30))
        await client.update_status(june[0].id, ReservationStatus.CONFIRMED)
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        cache_ttl: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        max_range_days: int = 366,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._cache_ttl = cache_ttl
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._max_range_days = max_range_days
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter

        self._cache: dict[tuple[str, str], _CacheEntry] = {}
        self._in_flight: dict[tuple[str, str], asyncio.Task[list[Reservation]]] = {}
        # Bumped on invalidation; results from an older generation are not cached.
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        **overrides: Any,
    ) -> "ReservationRepositoryClient":
        options: dict[str, Any] = {
            "http_client": http_client,
            "timeout": settings.http_timeout_seconds,
            "cache_ttl": settings.cache_ttl_seconds,
            "max_attempts": settings.retry_max_attempts,
            "backoff_base": settings.retry_base_delay_seconds,
            "max_range_days": settings.max_range_days,
        }
        options.update(overrides)
        return cls(settings.api_base_url, **options)

    @property
    def max_range_days(self) -> int:
        return self._max_range_days

    async def aclose(self) -> None:
        """Release the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def invalidate_cache(self) -> None:
        """Drop cached ranges and forget in-flight requests.

        Requests already on the wire still resolve for their callers, but
        their results are never written back into the cache.
        """
        self._generation += 1
        self._cache.clear()
        self._in_flight.clear()

    def _cached(self, key: tuple[str, str]) -> list[Reservation] | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self._cache_ttl:
            del self._cache[key]
            return None
        return list(entry.reservations)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Send one API call, retrying only on 429.

        Raises:
            ConflictError: On 409.
            NotFoundError: On 404.
            RateLimitedError: On 429 after the last attempt.
            RepositoryError: On transport failures and any other non-2xx.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers: dict[str, str] = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_ID_HEADER] = correlation_id

        attempt = 1
        while True:
            try:
                response = await self._http.request(
                    method, url, params=params, json=json_body, headers=headers
                )
            except httpx.HTTPError as exc:
                logger.error(
                    "reservations api request failed",
                    extra={"extra_fields": safe_log_context(
                        method=method, path=path, error_type=type(exc).__name__
                    )},
                )
                raise RepositoryError(f"{method} {path} failed: {exc}") from exc

            if response.status_code != RATE_LIMIT_STATUS:
                break

            if attempt >= self._max_attempts:
                logger.error(
                    "reservations api still rate-limited, giving up",
                    extra={"extra_fields": safe_log_context(
                        method=method, path=path, attempts=attempt
                    )},
                )
                raise RateLimitedError(
                    f"{method} {path} rate-limited after {attempt} attempts",
                    status_code=RATE_LIMIT_STATUS,
                )

            delay = self._backoff_base * (2 ** (attempt - 1)) + self._jitter(0, self._backoff_base)
            logger.warning(
                "reservations api rate-limited, retrying",
                extra={"extra_fields": safe_log_context(
                    method=method, path=path, attempt=attempt, delay=round(delay, 3)
                )},
            )
            await self._sleep(delay)
            attempt += 1

        if response.is_success:
            return response

        detail = _error_detail(response)
        status = response.status_code
        if status == 409:
            raise ConflictError(detail, status_code=status)
        if status == 404:
            raise NotFoundError(detail, status_code=status)
        logger.error(
            "reservations api returned an error",
            extra={"extra_fields": safe_log_context(method=method, path=path, status=status)},
        )
        raise RepositoryError(detail, status_code=status)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_range(
        self,
        start: date,
        end: date,
        *,
        no_cache: bool = False,
    ) -> list[Reservation]:
        """Reservations with at least one day in ``[start, end]``.

        Args:
            start: First day (inclusive).
            end: Last day (inclusive).
            no_cache: Skip the cache and any in-flight request; the fresh
                result replaces the cached one.

        Returns:
            Validated reservations; records that fail validation are logged
            and skipped. Callers get their own list copy.

        Raises:
            ValueError: If the range is inverted or wider than max_range_days.
            RepositoryError: On API failure.
        """
        if end < start:
            raise ValueError("range end must not precede its start")
        span = (end - start).days + 1
        if span > self._max_range_days:
            raise ValueError(
                f"range of {span} days exceeds the {self._max_range_days}-day limit"
            )

        key = (day_key(start), day_key(end))
        if no_cache:
            return list(await self._load_range(key, no_cache=True))

        cached = self._cached(key)
        if cached is not None:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load_range(key, no_cache=False))
            self._in_flight[key] = task
            generation = self._generation

            def _forget(done: asyncio.Task[list[Reservation]]) -> None:
                if generation == self._generation and self._in_flight.get(key) is done:
                    del self._in_flight[key]

            task.add_done_callback(_forget)

        # shield: one caller giving up must not cancel the shared request
        return list(await asyncio.shield(task))

    async def _load_range(self, key: tuple[str, str], *, no_cache: bool) -> list[Reservation]:
        generation = self._generation
        params: dict[str, Any] = {"start": key[0], "end": key[1]}
        if no_cache:
            params["noCache"] = "true"

        response = await self._request("GET", "reservations", params=params)
        reservations = _records(Reservation, response, "reservations")

        if generation == self._generation:
            self._cache[key] = _CacheEntry(stored_at=self._clock(), reservations=reservations)
        logger.info(
            "reservations fetched",
            extra={"extra_fields": safe_log_context(
                start=key[0], end=key[1], count=len(reservations), no_cache=no_cache
            )},
        )
        return reservations

    async def fetch_reservation(self, reservation_id: str) -> Reservation:
        """Load one reservation by id.

        Raises:
            NotFoundError: If it does not exist.
        """
        response = await self._request("GET", f"reservations/{reservation_id}")
        return _record(
            Reservation, _json_body(response, "reservation"), "reservation", response.status_code
        )

    async def fetch_history(self, day: date, room: str) -> list[HistoryEvent]:
        """Audit events for one room+day, in server order."""
        response = await self._request(
            "GET", "reservations/history", params={"date": day_key(day), "room": room}
        )
        return _records(HistoryEvent, response, "history")

    async def fetch_day_clear_events(self, since: datetime | None = None) -> list[ServerDayClearEvent]:
        """Unconsumed server-side day-clear events, optionally newer than ``since``."""
        params = {"since": since.isoformat()} if since is not None else None
        response = await self._request("GET", "day-clear-events", params=params)
        return _records(ServerDayClearEvent, response, "day-clear-events")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_reservation(self, reservation: NewReservation) -> Reservation:
        """Create a reservation; the server assigns id and author."""
        response = await self._request("POST", "reservations", json_body=reservation.to_wire())
        self.invalidate_cache()
        created = _record(
            Reservation, _json_body(response, "created reservation"), "created reservation",
            response.status_code,
        )
        logger.info(
            "reservation created",
            extra={"extra_fields": safe_log_context(
                reservation_id=created.id, room=created.room, days=created.day_keys
            )},
        )
        return created

    async def update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
    ) -> Reservation | None:
        """Set a reservation's status.

        Returns:
            The updated record when the server echoes it, otherwise None.

        Raises:
            ConflictError: Another confirmed/flagged reservation holds one of
                its room+days.
            RepositoryError: Any other failure.
        """
        response = await self._request(
            "PUT",
            f"reservations/{reservation_id}/status",
            json_body={"reservationStatus": status.value},
        )
        self.invalidate_cache()
        logger.info(
            "reservation status updated",
            extra={"extra_fields": safe_log_context(
                reservation_id=reservation_id, status=status.value
            )},
        )
        return self._optional_record(response)

    async def update_fields(self, reservation_id: str, fields: dict[str, Any]) -> Reservation:
        """Partially update a reservation (notes, trimmed dates)."""
        body = dict(fields)
        if "dates" in body:
            body["dates"] = [
                f"{day_key(d)}T00:00:00.000Z" if isinstance(d, date) else d
                for d in body["dates"]
            ]
        response = await self._request("PUT", f"reservations/{reservation_id}", json_body=body)
        self.invalidate_cache()
        logger.info(
            "reservation fields updated",
            extra={"extra_fields": {
                "reservation_id": reservation_id,
                "fields": sorted(body.keys()),
            }},
        )
        return _record(
            Reservation, _json_body(response, "updated reservation"), "updated reservation",
            response.status_code,
        )

    async def delete_reservation(self, reservation_id: str) -> None:
        await self._request("DELETE", f"reservations/{reservation_id}")
        self.invalidate_cache()
        logger.info(
            "reservation deleted",
            extra={"extra_fields": safe_log_context(reservation_id=reservation_id)},
        )

    async def consume_event(self, event_id: str) -> None:
        await self._request("POST", f"day-clear-events/{event_id}/consume")

    async def consume_events(self, event_ids: Iterable[str]) -> None:
        ids = list(event_ids)
        if not ids:
            return
        await self._request("POST", "day-clear-events/consume", json_body={"ids": ids})

    @staticmethod
    def _optional_record(response: httpx.Response) -> Reservation | None:
        if response.status_code == 204 or not response.content:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and ("_id" in payload or "id" in payload) and "dates" in payload:
            return _record(Reservation, payload, "status update", response.status_code)
        return None
