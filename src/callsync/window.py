"""Sync time-window resolution.

A run fetches calls started inside ``[start, end)``.  The window comes from
one of four mutually exclusive modes, picked by priority:

1. ``time_range``    - daily HH:MM-HH:MM on ``sync_date`` (or today)
2. ``calendar_date`` - the whole of ``sync_date``
3. ``lookback``      - the last N days up to now
4. ``continuous``    - watermark minus backfill grace (or local midnight) up to now

Explicit-date windows are clamped so they never end in the future.  A window
whose start is not before its end is empty and the run becomes a no-op.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from .config import WindowConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class WindowMode(enum.StrEnum):
    TIME_RANGE = "time_range"
    CALENDAR_DATE = "calendar_date"
    LOOKBACK = "lookback"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class SyncWindow:
    """Resolved absolute time range for one run."""

    start: datetime
    end: datetime
    mode: WindowMode

    @property
    def is_empty(self) -> bool:
        return self.start >= self.end

    @property
    def start_ms(self) -> int:
        return int(self.start.timestamp() * 1000)

    @property
    def end_ms(self) -> int:
        return int(self.end.timestamp() * 1000)


class InstantConverter(Protocol):
    """Converts between zone-local wall-clock times and absolute instants."""

    def to_instant(self, wall_clock: datetime, zone: str) -> datetime:
        """Return the UTC instant of naive *wall_clock* interpreted in *zone*."""
        ...

    def local_date(self, instant: datetime, zone: str) -> date:
        """Return the calendar date of *instant* as seen in *zone*."""
        ...


class ZoneInfoConverter:
    """:class:`InstantConverter` backed by the system tz database."""

    def to_instant(self, wall_clock: datetime, zone: str) -> datetime:
        return wall_clock.replace(tzinfo=ZoneInfo(zone)).astimezone(UTC)

    def local_date(self, instant: datetime, zone: str) -> date:
        return instant.astimezone(ZoneInfo(zone)).date()


class WindowResolver:
    """Computes the fetch window for a run from config, watermark and clock."""

    def __init__(
        self,
        config: WindowConfig,
        *,
        clock: Clock = utc_now,
        converter: InstantConverter | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._converter = converter or ZoneInfoConverter()

    @property
    def mode(self) -> WindowMode:
        if self._config.time_range is not None:
            return WindowMode.TIME_RANGE
        if self._config.sync_date is not None:
            return WindowMode.CALENDAR_DATE
        if self._config.lookback_days is not None:
            return WindowMode.LOOKBACK
        return WindowMode.CONTINUOUS

    def resolve(self, watermark_epoch_s: int = 0) -> SyncWindow:
        """Resolve the window for a run given the persisted watermark (0 = none)."""
        now = self._clock()
        mode = self.mode
        if mode is WindowMode.TIME_RANGE:
            window = self._time_range_window(now)
        elif mode is WindowMode.CALENDAR_DATE:
            window = self._calendar_date_window(now)
        elif mode is WindowMode.LOOKBACK:
            assert self._config.lookback_days is not None
            window = SyncWindow(
                start=now - timedelta(days=self._config.lookback_days),
                end=now,
                mode=mode,
            )
        else:
            window = self._continuous_window(now, watermark_epoch_s)

        logger.info(
            "Sync window resolved: mode=%s start=%s end=%s%s",
            window.mode,
            window.start.isoformat(),
            window.end.isoformat(),
            " (empty)" if window.is_empty else "",
        )
        return window

    def _target_date(self, now: datetime) -> date:
        if self._config.sync_date is not None:
            return self._config.sync_date
        return self._converter.local_date(now, self._config.timezone)

    def _local(self, day: date, at: time) -> datetime:
        return self._converter.to_instant(datetime.combine(day, at), self._config.timezone)

    def _time_range_window(self, now: datetime) -> SyncWindow:
        time_range = self._config.time_range
        assert time_range is not None
        day = self._target_date(now)
        start = self._local(day, time_range.start)
        end_day = day if time_range.end > time_range.start else day + timedelta(days=1)
        end = self._local(end_day, time_range.end)
        return SyncWindow(start=start, end=min(end, now), mode=WindowMode.TIME_RANGE)

    def _calendar_date_window(self, now: datetime) -> SyncWindow:
        day = self._target_date(now)
        start = self._local(day, time.min)
        end = self._local(day, time.max)
        return SyncWindow(start=start, end=min(end, now), mode=WindowMode.CALENDAR_DATE)

    def _continuous_window(self, now: datetime, watermark_epoch_s: int) -> SyncWindow:
        if watermark_epoch_s > 0:
            watermark = datetime.fromtimestamp(watermark_epoch_s, UTC)
            start = watermark - timedelta(seconds=self._config.backfill_grace_seconds)
        else:
            today = self._converter.local_date(now, self._config.timezone)
            start = self._local(today, time.min)
        return SyncWindow(start=start, end=now, mode=WindowMode.CONTINUOUS)
