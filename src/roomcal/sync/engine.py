"""Per-session reservation sync engine.

One SyncEngine exists per authenticated session. It owns the reservation
store for the month on screen, the day-clear detector, the notification
list and the background loops, and tears all of them down on logout so
nothing leaks into the next user's session.

Lifecycle:
    engine = SyncEngine(client, settings, listener=render_notifications)
    await engine.start(SessionUser("bob"))
    await engine.show_month(2025, 6)
    ...
    await engine.logout()
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable

from roomcal.domain.day_clear import DayClearDetector
from roomcal.domain.models import (
    DayClearNotification,
    HistoryEvent,
    NewReservation,
    Reservation,
    ReservationStatus,
    SessionUser,
    unique_by_id,
)
from roomcal.domain.occupancy import (
    blocked_pre_keys,
    occupying_conflicts,
    slot_in_window,
    slot_key,
    split_slot_key,
)
from roomcal.domain.permissions import require_delete, require_edit
from roomcal.domain.ranges import (
    DateWindow,
    adjacent_months_window,
    chunk_window,
    horizon_window,
    month_window,
)
from roomcal.domain.status_transitions import StatusTransitionEngine, TransitionResult
from roomcal.infra.config import SyncSettings
from roomcal.infra.repository_client import RepositoryError, ReservationRepositoryClient
from roomcal.infra.time import utc_now, utc_today
from roomcal.observability.correlation import correlation_scope
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context
from roomcal.sync.notifications import Listener, NotificationCenter, OpenDayRequest
from roomcal.sync.scheduler import SweepScheduler
from roomcal.sync.store import ReservationStore

logger = get_logger(__name__)


def _slots_window(keys: Iterable[str]) -> DateWindow | None:
    days = [date.fromisoformat(split_slot_key(k)[1]) for k in keys]
    if not days:
        return None
    return DateWindow(min(days), max(days))


class EngineNotStartedError(RuntimeError):
    """Raised when an operation needs a session user but none is active."""


class SyncEngine:
    """Reservation sync core for one authenticated user."""

    def __init__(
        self,
        client: ReservationRepositoryClient,
        settings: SyncSettings | None = None,
        *,
        listener: Listener | None = None,
        today: Callable[[], date] = utc_today,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._settings = settings or SyncSettings()
        self._today = today
        self._monotonic = monotonic
        self._rng = rng
        self._sleep = sleep

        self._detector = DayClearDetector(
            "", message_template=self._settings.notification_template, clock=clock
        )
        self._notifications = NotificationCenter(
            listener=listener, message_template=self._settings.notification_template
        )
        self._store = ReservationStore()
        self._transitions = StatusTransitionEngine(client, self._store, self._resync_after)
        self._scheduler: SweepScheduler | None = None

        self._user: SessionUser | None = None
        self._known_user_key: str | None = None
        self._viewed: DateWindow | None = None
        self._view_token = 0
        self._selected: tuple[str, date] | None = None
        self._selected_reservations: list[Reservation] = []
        self._blocked: set[str] = set()
        self._notes_saving = 0
        self._last_activity = monotonic()
        self._feed_since: datetime | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def user(self) -> SessionUser | None:
        return self._user

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.active

    @property
    def scheduler(self) -> SweepScheduler | None:
        return self._scheduler

    @property
    def reservations(self) -> list[Reservation]:
        return self._store.all()

    @property
    def viewed_window(self) -> DateWindow | None:
        return self._viewed

    @property
    def selected_reservations(self) -> list[Reservation]:
        return list(self._selected_reservations)

    @property
    def notifications(self) -> list[DayClearNotification]:
        return self._notifications.items

    @property
    def notified_days(self) -> frozenset[str]:
        return self._detector.notified_days

    @property
    def blocked_slots(self) -> frozenset[str]:
        return frozenset(self._blocked)

    @property
    def notes_saving(self) -> bool:
        return self._notes_saving > 0

    def on_notifications(self, listener: Listener | None) -> None:
        """Register the callback that receives the notification list on change."""
        self._notifications.set_listener(listener)

    def _require_user(self) -> SessionUser:
        if self._user is None:
            raise EngineNotStartedError("sync engine has no session user; call start() first")
        return self._user

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, user: SessionUser, *, seen_keys: Iterable[str] = ()) -> None:
        """Begin a session for ``user`` and start the background loops.

        If ``user`` differs from the previously known identity, all cached
        data and notification state are dropped first.
        """
        if self._scheduler is not None:
            await self.stop()

        if self._known_user_key != user.key:
            if self._known_user_key is not None:
                logger.warning("session identity changed, invalidating sync state")
            self.invalidate()
            self._detector.reset(user.username)

        self._user = user
        self._known_user_key = user.key
        self._detector.seed(seen_keys)
        self.touch()

        self._scheduler = SweepScheduler(
            self._settings,
            refresh_view=self.refresh_view,
            sweep_wide=self.sweep_wide,
            sweep_horizon=self.sweep_horizon,
            poll_focused=self.poll_focused,
            blocked_count=lambda: len(self._blocked),
            notes_saving=lambda: self.notes_saving,
            poll_event_feed=self.poll_event_feed,
            check_idle=self.check_idle,
            rng=self._rng,
            sleep=self._sleep,
        )
        self._scheduler.start()
        logger.info("sync engine started", extra={"extra_fields": {"role": user.role}})

    async def stop(self) -> None:
        """Stop the background loops; cached state is kept."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            await scheduler.stop()

    async def logout(self) -> None:
        """Stop everything and forget the session's data."""
        await self.stop()
        self.invalidate()
        self._user = None
        self._known_user_key = None
        logger.info("sync engine logged out")

    def invalidate(self) -> None:
        """Drop cache, detector state, notifications and the local view."""
        self._client.invalidate_cache()
        self._detector.reset()
        self._notifications.clear()
        self._store.clear()
        self._blocked.clear()
        self._viewed = None
        self._view_token += 1
        self._selected = None
        self._selected_reservations = []
        self._feed_since = None

    def touch(self) -> None:
        """Record user activity (resets the idle timeout)."""
        self._last_activity = self._monotonic()

    async def check_idle(self) -> None:
        timeout = self._settings.idle_timeout_seconds
        if timeout <= 0 or self._user is None:
            return
        idle_for = self._monotonic() - self._last_activity
        if idle_for >= timeout:
            logger.info(
                "session idle, logging out",
                extra={"extra_fields": {"idle_seconds": round(idle_for)}},
            )
            await self.logout()

    # ------------------------------------------------------------------
    # Fetch + detect
    # ------------------------------------------------------------------

    async def _fetch_window(self, window: DateWindow, *, no_cache: bool) -> list[Reservation]:
        chunks = chunk_window(window, self._client.max_range_days)
        collected: list[Reservation] = []
        for chunk in chunks:
            collected.extend(await self._client.fetch_range(chunk.start, chunk.end, no_cache=no_cache))
        return unique_by_id(collected)

    def _ingest(
        self,
        reservations: list[Reservation],
        window: DateWindow,
        source: str,
    ) -> list[DayClearNotification]:
        """Feed one fetch result to the detector and refresh the blocked set.

        Never awaits, so two passes cannot interleave.
        """
        conflicts = occupying_conflicts(reservations)
        if conflicts:
            logger.warning(
                "fetched data holds several occupying reservations on one slot",
                extra={"extra_fields": {"source": source, "slots": sorted(conflicts)}},
            )

        found = self._detector.process(reservations, window)
        added = self._notifications.add(found)

        user = self._user
        if user is not None:
            kept = {k for k in self._blocked if not slot_in_window(k, window)}
            fresh = {
                k for k in blocked_pre_keys(reservations, user.username)
                if slot_in_window(k, window)
            }
            self._blocked = kept | fresh
        if self._scheduler is not None:
            self._scheduler.ensure_focused_poll()

        logger.info(
            "sync pass applied",
            extra={"extra_fields": safe_log_context(
                source=source,
                start=window.start,
                end=window.end,
                count=len(reservations),
                notifications=len(added),
                blocked=len(self._blocked),
            )},
        )
        return added

    async def _sync_window(
        self,
        window: DateWindow,
        *,
        no_cache: bool,
        source: str,
    ) -> list[DayClearNotification]:
        token = self._view_token
        reservations = await self._fetch_window(window, no_cache=no_cache)
        if self._user is None:
            # logged out while the fetch was in flight
            return []
        added = self._ingest(reservations, window, source)
        if token == self._view_token and window == self._viewed:
            self._store.replace_all(reservations, window)
            self._reconcile_selection()
        return added

    async def show_month(self, year: int, month: int) -> list[Reservation]:
        """Navigate to a month: fetch it, run detection, fill the store.

        A result that arrives after the user navigated elsewhere still feeds
        the detector but does not replace the store.
        """
        self._require_user()
        window = month_window(year, month)
        self._viewed = window
        self._view_token += 1
        with correlation_scope("month-view"):
            await self._sync_window(window, no_cache=False, source="month-view")
        return self._store.all() if self._viewed == window else []

    async def refresh_view(self, *, no_cache: bool = False) -> list[DayClearNotification]:
        """Re-fetch the month on screen (silent background refresh)."""
        if self._viewed is None or self._user is None:
            return []
        return await self._sync_window(self._viewed, no_cache=no_cache, source="silent-refresh")

    async def poll_focused(self) -> list[DayClearNotification]:
        """Re-fetch the span of the user's blocked pre slots, bypassing the cache."""
        window = _slots_window(self._blocked)
        if window is None or self._user is None:
            return []
        return await self._sync_window(window, no_cache=True, source="focused-poll")

    async def sweep_wide(self) -> list[DayClearNotification]:
        if self._user is None:
            return []
        window = adjacent_months_window(self._today())
        return await self._sync_window(window, no_cache=False, source="wide-sweep")

    async def sweep_horizon(self) -> list[DayClearNotification]:
        if self._user is None:
            return []
        window = horizon_window(self._today(), self._settings.horizon_years)
        return await self._sync_window(window, no_cache=False, source="horizon-sweep")

    async def _resync_after(self, reservation: Reservation) -> None:
        """Re-fetch after a mutation so the server's view wins.

        Covers the month on screen and every day of the changed reservation;
        days outside the view get their own fetch.
        """
        affected = DateWindow(reservation.dates[0], reservation.dates[-1])
        viewed = self._viewed
        if viewed is not None:
            await self._sync_window(viewed, no_cache=True, source="post-mutation")
        if viewed is None or not (viewed.contains(affected.start) and viewed.contains(affected.end)):
            await self._sync_window(affected, no_cache=True, source="post-mutation")
        if self._settings.event_feed_seconds > 0:
            await self.poll_event_feed()

    # ------------------------------------------------------------------
    # Day selection
    # ------------------------------------------------------------------

    def _reconcile_selection(self) -> None:
        if self._selected is None:
            return
        room, day = self._selected
        self._selected_reservations = self._store.on_day(room, day)

    async def select_day(self, room: str, day: date) -> list[Reservation] | None:
        """Open a room+day and return its reservations.

        Returns None when another day was selected before the fetch finished;
        the stale result is dropped.
        """
        self._require_user()
        self.touch()
        selection = (room, day)
        self._selected = selection
        window = month_window(day.year, day.month)
        reservations = await self._client.fetch_range(window.start, window.end)
        if self._selected != selection:
            return None
        self._selected_reservations = [
            r for r in reservations if r.room == room and day in r.dates
        ]
        return list(self._selected_reservations)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def change_status(self, reservation_id: str, status: ReservationStatus) -> TransitionResult:
        self._require_user()
        self.touch()
        with correlation_scope("status-change"):
            return await self._transitions.change_status(reservation_id, status)

    async def toggle_flag(self, reservation_id: str, flagged: bool) -> TransitionResult:
        self._require_user()
        self.touch()
        with correlation_scope("flag-toggle"):
            return await self._transitions.toggle_flag(reservation_id, flagged)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        local = self._store.get(reservation_id)
        if local is not None:
            return local
        return await self._client.fetch_reservation(reservation_id)

    async def _resync_quietly(self, reservation: Reservation) -> None:
        try:
            await self._resync_after(reservation)
        except RepositoryError:
            logger.exception(
                "re-sync after mutation failed",
                extra={"extra_fields": safe_log_context(reservation_id=reservation.id)},
            )

    async def create_reservation(self, reservation: NewReservation) -> Reservation:
        self._require_user()
        self.touch()
        with correlation_scope("create"):
            created = await self._client.create_reservation(reservation)
            await self._resync_quietly(created)
        return created

    async def delete_reservation(self, reservation_id: str) -> None:
        """Delete a whole reservation (all its days).

        Raises:
            PermissionDeniedError: Staff deleting someone else's reservation.
            RepositoryError: On API failure; the local view is untouched.
        """
        user = self._require_user()
        self.touch()
        with correlation_scope("delete"):
            reservation = await self.get_reservation(reservation_id)
            require_delete(user, reservation)
            await self._client.delete_reservation(reservation_id)
            self._store.remove(reservation_id)
            await self._resync_quietly(reservation)

    async def remove_day(self, reservation_id: str, day: date) -> Reservation:
        """Remove one day from a multi-day reservation.

        Raises:
            ValueError: If ``day`` is the reservation's only day (use
                delete_reservation) or not one of its days.
            PermissionDeniedError: Staff editing someone else's reservation.
        """
        user = self._require_user()
        self.touch()
        with correlation_scope("remove-day"):
            reservation = await self.get_reservation(reservation_id)
            require_delete(user, reservation)
            trimmed = reservation.without_day(day)
            updated = await self._client.update_fields(reservation_id, {"dates": trimmed.dates})
            self._store.apply(updated)
            await self._resync_quietly(updated)
        return updated

    async def save_notes(self, reservation_id: str, notes: str, *, admin: bool = False) -> Reservation:
        """Save notes (or admin notes) on a reservation.

        While a save is in flight the silent refresh skips its tick.
        """
        user = self._require_user()
        self.touch()
        reservation = await self.get_reservation(reservation_id)
        require_edit(user, reservation, admin_notes=admin)
        field = "adminNotes" if admin else "notes"
        self._notes_saving += 1
        try:
            with correlation_scope("notes"):
                updated = await self._client.update_fields(reservation_id, {field: notes})
        finally:
            self._notes_saving -= 1
        if reservation_id in self._store:
            self._store.apply(updated)
        return updated

    async def load_history(
        self,
        room: str,
        day: date,
        reservation_id: str | None = None,
    ) -> list[HistoryEvent]:
        """History for a room+day; narrowed to one reservation when given.

        Events without a reservation id are kept either way.
        """
        self._require_user()
        events = await self._client.fetch_history(day, room)
        if reservation_id is None:
            return events
        return [e for e in events if e.reservation_id in (None, reservation_id)]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def poll_event_feed(self) -> list[DayClearNotification]:
        """Merge the server day-clear feed into the notification list.

        Events for a clearing this session already notified (and the user
        dismissed) are consumed on the server without showing them again.
        """
        if self._user is None:
            return []
        events = await self._client.fetch_day_clear_events(self._feed_since)
        fresh = []
        duplicates = []
        for event in events:
            slot = slot_key(event.room, event.day)
            if not self._notifications.has_slot(slot) and slot in self._detector.notified_days:
                duplicates.append(event.id)
                continue
            self._detector.mark_notified(slot)
            fresh.append(event)
            if event.created_at is not None and (
                self._feed_since is None or event.created_at > self._feed_since
            ):
                self._feed_since = event.created_at

        added = self._notifications.merge_server_events(fresh)
        if duplicates:
            await self._client.consume_events(duplicates)
        return added

    async def dismiss(self, notification_id: str) -> DayClearNotification | None:
        removed = self._notifications.dismiss(notification_id)
        if removed is not None and removed.server_event_id is not None:
            await self._client.consume_event(removed.server_event_id)
        return removed

    async def dismiss_all(self) -> list[DayClearNotification]:
        removed = self._notifications.dismiss_all()
        await self._client.consume_events(
            n.server_event_id for n in removed if n.server_event_id is not None
        )
        return removed

    def request_open_day(self, room: str, day: date) -> None:
        self._notifications.request_open_day(room, day)

    def consume_open_day_request(self) -> OpenDayRequest | None:
        return self._notifications.consume_open_day_request()

    async def open_notification(self, notification_id: str) -> OpenDayRequest | None:
        """Queue navigation to a notification's day and dismiss it."""
        notification = self._notifications.get(notification_id)
        if notification is None:
            return None
        request = OpenDayRequest(room=notification.room, day=date.fromisoformat(notification.day_key))
        self._notifications.request_open_day(request.room, request.day)
        await self.dismiss(notification_id)
        return request
