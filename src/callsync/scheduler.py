"""Cron-driven background sync loop.

Fires the orchestrator at every occurrence of a 5-field cron expression
(evaluated in UTC via croniter), optionally once right at startup.  A failed
run is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Protocol

from croniter import croniter

from .config import ScheduleConfig
from .models import SyncRunResult
from .retry import SleepFn
from .window import Clock, utc_now

logger = logging.getLogger(__name__)


class SyncRunner(Protocol):
    async def run(self) -> SyncRunResult: ...


def next_run_at(cron: str, *, now: datetime | None = None) -> datetime:
    """Compute the next fire time for a cron expression after *now* (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


class SyncScheduler:
    """Background task that runs syncs on a cron schedule."""

    def __init__(
        self,
        runner: SyncRunner,
        schedule: ScheduleConfig,
        *,
        clock: Clock = utc_now,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if not croniter.is_valid(schedule.cron):
            raise ValueError(f"Invalid cron expression: {schedule.cron!r}")
        self._runner = runner
        self._schedule = schedule
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.runs_started = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduler background task."""
        if self._task is not None:
            logger.warning("Sync scheduler already running")
            return
        self._task = asyncio.create_task(self._loop(), name="callsync-scheduler")
        logger.info(
            "Started sync scheduler: cron=%r run_on_startup=%s",
            self._schedule.cron,
            self._schedule.run_on_startup,
        )

    async def stop(self) -> None:
        """Stop the scheduler background task gracefully."""
        if self._task is None:
            return

        logger.info("Stopping sync scheduler")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        self._task = None
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        try:
            if self._schedule.run_on_startup:
                await self._run_once()
            while True:
                now = self._clock()
                fire_at = next_run_at(self._schedule.cron, now=now)
                delay = max(0.0, (fire_at - now).total_seconds())
                logger.debug("Next scheduled sync at %s (in %.1fs)", fire_at.isoformat(), delay)
                await self._sleep(delay)
                await self._run_once()
        except asyncio.CancelledError:
            logger.debug("Sync scheduler loop cancelled")
            raise

    async def _run_once(self) -> None:
        self.runs_started += 1
        try:
            result = await self._runner.run()
        except Exception:
            # Log but don't crash the loop
            logger.exception("Scheduled sync failed")
            return
        if not result.success:
            logger.warning("Scheduled sync did not run: %s", result.error)
