"""Background polling loops.

Each loop is a self-rescheduling asyncio task: it sleeps, runs its action,
and only then computes the next delay, so a slow fetch pushes the next
tick back instead of overlapping it. A failing tick is logged and the loop
carries on. Loops stop cooperatively (flag checked before every reschedule)
and their pending sleep is cancelled.

Loops owned by SweepScheduler:
- silent-refresh: viewed month, every [5, 10) min, skipped while notes save
- focused-poll:   viewed month, every 60 s while the user has blocked pre
                  reservations; ends itself when none are left
- wide-sweep:     previous/current/next month, every [12, 15) min
- horizon-sweep:  today .. +5 years in chunks, every [6, 7) h
- event-feed:     server day-clear events (optional)
- idle-watch:     logs the session out after inactivity (optional)
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable

from roomcal.infra.config import SyncSettings
from roomcal.observability.correlation import correlation_scope
from roomcal.observability.logging import get_logger

logger = get_logger(__name__)

Action = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]

IDLE_CHECK_SECONDS = 60.0


class PollingLoop:
    """One named, self-rescheduling background task."""

    def __init__(
        self,
        name: str,
        action: Action,
        delay: Callable[[], float],
        *,
        run_immediately: bool = False,
        should_skip: Callable[[], bool] | None = None,
        keep_running: Callable[[], bool] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self._action = action
        self._delay = delay
        self._run_immediately = run_immediately
        self._should_skip = should_skip
        self._keep_running = keep_running
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._stopped = True
        self.ticks = 0
        self.skipped = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Schedule the loop on the running event loop. No-op if already running."""
        if self.running:
            return False
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"roomcal-{self.name}"
        )
        return True

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Stopping from inside our own tick: the flag ends the loop.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _tick(self) -> None:
        if self._should_skip is not None and self._should_skip():
            self.skipped += 1
            logger.info("loop tick skipped", extra={"extra_fields": {"loop": self.name}})
            return
        with correlation_scope(self.name):
            try:
                await self._action()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception("loop tick failed", extra={"extra_fields": {"loop": self.name}})
        self.ticks += 1

    async def _run(self) -> None:
        first = True
        while not self._stopped:
            if not (first and self._run_immediately):
                await self._sleep(self._delay())
            first = False
            if self._stopped:
                break
            await self._tick()
            if self._keep_running is not None and not self._keep_running():
                logger.info("loop finished", extra={"extra_fields": {"loop": self.name}})
                break


def uniform_delay(rng: random.Random, low: float, high: float) -> Callable[[], float]:
    """Delay drawn from [low, high) on every call."""
    if high <= low:
        return lambda: low
    return lambda: low + rng.random() * (high - low)


class SweepScheduler:
    """Owns every background loop of one session."""

    def __init__(
        self,
        settings: SyncSettings,
        *,
        refresh_view: Action,
        sweep_wide: Action,
        sweep_horizon: Action,
        poll_focused: Action,
        blocked_count: Callable[[], int],
        notes_saving: Callable[[], bool],
        poll_event_feed: Action | None = None,
        check_idle: Action | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        rng = rng or random.Random()
        self._blocked_count = blocked_count
        self._active = False

        self.silent_refresh = PollingLoop(
            "silent-refresh",
            refresh_view,
            uniform_delay(rng, settings.silent_refresh_min_seconds, settings.silent_refresh_max_seconds),
            should_skip=notes_saving,
            sleep=sleep,
        )
        self.focused_poll = PollingLoop(
            "focused-poll",
            poll_focused,
            lambda: settings.focused_poll_seconds,
            keep_running=lambda: self._blocked_count() > 0,
            sleep=sleep,
        )
        self.wide_sweep = PollingLoop(
            "wide-sweep",
            sweep_wide,
            uniform_delay(rng, settings.wide_sweep_min_seconds, settings.wide_sweep_max_seconds),
            run_immediately=True,
            sleep=sleep,
        )
        self.horizon_sweep = PollingLoop(
            "horizon-sweep",
            sweep_horizon,
            uniform_delay(rng, settings.horizon_sweep_min_seconds, settings.horizon_sweep_max_seconds),
            run_immediately=True,
            sleep=sleep,
        )
        self.event_feed: PollingLoop | None = None
        if poll_event_feed is not None and settings.event_feed_seconds > 0:
            self.event_feed = PollingLoop(
                "event-feed",
                poll_event_feed,
                lambda: settings.event_feed_seconds,
                run_immediately=True,
                sleep=sleep,
            )
        self.idle_watch: PollingLoop | None = None
        if check_idle is not None and settings.idle_timeout_seconds > 0:
            self.idle_watch = PollingLoop(
                "idle-watch",
                check_idle,
                lambda: min(IDLE_CHECK_SECONDS, settings.idle_timeout_seconds),
                sleep=sleep,
            )

    @property
    def active(self) -> bool:
        return self._active

    @property
    def loops(self) -> list[PollingLoop]:
        loops = [self.silent_refresh, self.focused_poll, self.wide_sweep, self.horizon_sweep]
        loops.extend(loop for loop in (self.event_feed, self.idle_watch) if loop is not None)
        return loops

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        for loop in (self.silent_refresh, self.wide_sweep, self.horizon_sweep,
                     self.event_feed, self.idle_watch):
            if loop is not None:
                loop.start()
        self.ensure_focused_poll()
        logger.info("sweep scheduler started", extra={"extra_fields": {
            "loops": [loop.name for loop in self.loops if loop.running],
        }})

    def ensure_focused_poll(self) -> bool:
        """Start the focused poll if the user has blocked pre reservations.

        Returns:
            True if the focused poll is running after the call.
        """
        if self._active and self._blocked_count() > 0 and not self.focused_poll.running:
            self.focused_poll.start()
            logger.info("focused poll started", extra={"extra_fields": {
                "blocked": self._blocked_count(),
            }})
        return self.focused_poll.running

    async def stop(self) -> None:
        self._active = False
        for loop in self.loops:
            await loop.stop()
        logger.info("sweep scheduler stopped")
