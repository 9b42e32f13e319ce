"""Sync core settings.

All values come from ROOMCAL_* environment variables with the defaults
below. Intervals are in seconds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_ROOMS = ("room 1", "room 2", "room 3")
DEFAULT_NOTIFICATION_TEMPLATE = "{room}: {day:02d}/{month:02d}/{year} is now free"


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the repository client, detector and polling loops."""

    api_base_url: str = "http://localhost:3000/api"
    http_timeout_seconds: float = 30.0

    cache_ttl_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    # Widest range the server accepts for one reservations/history query.
    max_range_days: int = 366

    silent_refresh_min_seconds: float = 5 * 60
    silent_refresh_max_seconds: float = 10 * 60
    focused_poll_seconds: float = 60
    wide_sweep_min_seconds: float = 12 * 60
    wide_sweep_max_seconds: float = 15 * 60
    horizon_sweep_min_seconds: float = 6 * 3600
    horizon_sweep_max_seconds: float = 7 * 3600
    horizon_years: int = 5
    # 0 disables polling of the server day-clear feed.
    event_feed_seconds: float = 120

    idle_timeout_seconds: float = 15 * 60

    notification_template: str = DEFAULT_NOTIFICATION_TEMPLATE
    rooms: tuple[str, ...] = DEFAULT_ROOMS


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_rooms(default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get("ROOMCAL_ROOMS", "")
    rooms = tuple(r.strip() for r in raw.split(",") if r.strip())
    return rooms or default


def validate_settings(settings: SyncSettings) -> None:
    if not settings.api_base_url:
        raise ValueError("api_base_url must be set")
    if settings.http_timeout_seconds <= 0:
        raise ValueError("http_timeout_seconds must be > 0")
    if settings.cache_ttl_seconds < 0:
        raise ValueError("cache_ttl_seconds must be >= 0")
    if settings.retry_max_attempts < 1:
        raise ValueError("retry_max_attempts must be >= 1")
    if settings.retry_base_delay_seconds < 0:
        raise ValueError("retry_base_delay_seconds must be >= 0")
    if settings.max_range_days < 31:
        raise ValueError("max_range_days must cover at least one month (>= 31)")
    if settings.focused_poll_seconds <= 0:
        raise ValueError("focused_poll_seconds must be > 0")
    if settings.event_feed_seconds < 0:
        raise ValueError("event_feed_seconds must be >= 0")
    if settings.idle_timeout_seconds < 0:
        raise ValueError("idle_timeout_seconds must be >= 0")
    if settings.horizon_years < 1:
        raise ValueError("horizon_years must be >= 1")
    for label in ("silent_refresh", "wide_sweep", "horizon_sweep"):
        low = getattr(settings, f"{label}_min_seconds")
        high = getattr(settings, f"{label}_max_seconds")
        if low <= 0 or high < low:
            raise ValueError(f"{label} interval must satisfy 0 < min <= max")
    if not settings.rooms:
        raise ValueError("at least one room must be configured")


def load_settings() -> SyncSettings:
    """Build settings from the environment and validate them.

    Raises:
        ValueError: If a variable is malformed or the values are inconsistent.
    """
    defaults = SyncSettings()
    settings = SyncSettings(
        api_base_url=os.environ.get("ROOMCAL_API_BASE_URL", defaults.api_base_url).rstrip("/"),
        http_timeout_seconds=_env_float("ROOMCAL_HTTP_TIMEOUT", defaults.http_timeout_seconds),
        cache_ttl_seconds=_env_float("ROOMCAL_CACHE_TTL", defaults.cache_ttl_seconds),
        retry_max_attempts=_env_int("ROOMCAL_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts),
        retry_base_delay_seconds=_env_float(
            "ROOMCAL_RETRY_BASE_DELAY", defaults.retry_base_delay_seconds
        ),
        max_range_days=_env_int("ROOMCAL_MAX_RANGE_DAYS", defaults.max_range_days),
        silent_refresh_min_seconds=_env_float(
            "ROOMCAL_SILENT_REFRESH_MIN", defaults.silent_refresh_min_seconds
        ),
        silent_refresh_max_seconds=_env_float(
            "ROOMCAL_SILENT_REFRESH_MAX", defaults.silent_refresh_max_seconds
        ),
        focused_poll_seconds=_env_float("ROOMCAL_FOCUSED_POLL", defaults.focused_poll_seconds),
        wide_sweep_min_seconds=_env_float("ROOMCAL_WIDE_SWEEP_MIN", defaults.wide_sweep_min_seconds),
        wide_sweep_max_seconds=_env_float("ROOMCAL_WIDE_SWEEP_MAX", defaults.wide_sweep_max_seconds),
        horizon_sweep_min_seconds=_env_float(
            "ROOMCAL_HORIZON_SWEEP_MIN", defaults.horizon_sweep_min_seconds
        ),
        horizon_sweep_max_seconds=_env_float(
            "ROOMCAL_HORIZON_SWEEP_MAX", defaults.horizon_sweep_max_seconds
        ),
        horizon_years=_env_int("ROOMCAL_HORIZON_YEARS", defaults.horizon_years),
        event_feed_seconds=_env_float("ROOMCAL_EVENT_FEED_INTERVAL", defaults.event_feed_seconds),
        idle_timeout_seconds=_env_float("ROOMCAL_IDLE_TIMEOUT", defaults.idle_timeout_seconds),
        notification_template=os.environ.get(
            "ROOMCAL_NOTIFICATION_TEMPLATE", defaults.notification_template
        ),
        rooms=_env_rooms(defaults.rooms),
    )
    validate_settings(settings)
    return settings
