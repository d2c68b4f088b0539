"""Sync orchestrator: the single entry point for running a sync.

State machine: Idle -> Running -> Idle.  A run requested while another is in
flight is rejected with a non-fatal result rather than queued.  Results are
kept in a bounded newest-first history that lives only in memory; the
watermark file is the only state that survives a restart.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import httpx
from opentelemetry import trace

from .config import SyncConfig
from .core.logging import set_sync_run_context
from .core.metrics import SyncMetrics
from .core.telemetry import RUN_SPAN_NAME, get_tracer, tag_run_span
from .destination import AirtableClient
from .errors import SyncInProgressError
from .models import SyncRunResult, SyncStatus
from .pipeline import SyncPipeline
from .retry import SleepFn
from .source import CallSource, DialpadCallSource
from .state import WatermarkStore
from .window import Clock, utc_now

logger = logging.getLogger(__name__)

ALREADY_RUNNING_ERROR = "Sync already in progress"
DEFAULT_STATUS_HISTORY = 10


class SyncEventType(enum.StrEnum):
    STARTED = "sync.started"
    COMPLETED = "sync.completed"
    FAILED = "sync.failed"


@dataclass(frozen=True)
class SyncEvent:
    """Lifecycle notification for one run."""

    type: SyncEventType
    run_id: str
    result: SyncRunResult | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class SyncEventSink(Protocol):
    """Receives lifecycle events (push channel, dashboard, ...)."""

    async def emit(self, event: SyncEvent) -> None: ...


class LoggingEventSink:
    """Default sink: writes each lifecycle event to the log."""

    async def emit(self, event: SyncEvent) -> None:
        if event.result is None:
            logger.info("Sync event %s (run %s)", event.type, event.run_id)
            return
        logger.info(
            "Sync event %s (run %s): success=%s total=%d matched=%d unmatched=%d pages=%d error=%s",
            event.type,
            event.run_id,
            event.result.success,
            event.result.total_calls,
            event.result.matched_calls,
            event.result.unmatched_calls,
            event.result.pages_processed,
            event.result.error,
        )


class SyncOrchestrator:
    """Runs syncs one at a time and exposes status for external surfaces."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        source: CallSource,
        client: AirtableClient,
        store: WatermarkStore,
        event_sink: SyncEventSink | None = None,
        metrics: SyncMetrics | None = None,
        clock: Clock = utc_now,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config
        self._source = source
        self._client = client
        self._store = store
        self._event_sink: SyncEventSink = event_sink or LoggingEventSink()
        self._metrics = metrics or SyncMetrics()
        self._pipeline = SyncPipeline(
            config,
            source=source,
            client=client,
            store=store,
            clock=clock,
            sleep=sleep,
            metrics=self._metrics,
        )
        self._history: deque[SyncRunResult] = deque(maxlen=max(1, config.history_limit))
        self._running = False
        self._background_tasks: set[asyncio.Task[SyncRunResult | None]] = set()

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        event_sink: SyncEventSink | None = None,
        source_http_client: httpx.AsyncClient | None = None,
        destination_http_client: httpx.AsyncClient | None = None,
    ) -> SyncOrchestrator:
        """Wire the Dialpad source, Airtable client and file watermark store."""
        return cls(
            config,
            source=DialpadCallSource.from_config(
                config.source, retry_policy=config.retry, http_client=source_http_client
            ),
            client=AirtableClient.from_config(
                config.destination,
                retry_policy=config.retry,
                http_client=destination_http_client,
            ),
            store=WatermarkStore(config.state_dir),
            event_sink=event_sink,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def store(self) -> WatermarkStore:
        return self._store

    @property
    def history(self) -> list[SyncRunResult]:
        """Run results, newest first."""
        return list(self._history)

    async def run(self) -> SyncRunResult:
        """Execute one sync.

        Returns
        -------
        SyncRunResult
            The run's result, or a ``success=False`` rejection (not recorded
            in history) when another run is already in progress.

        Raises
        ------
        Exception
            Any uncaught pipeline failure, after the failed result has been
            recorded and the failed event emitted.
        """
        if self._running:
            logger.warning("Sync run requested while another run is in progress; rejecting")
            return SyncRunResult(success=False, error=ALREADY_RUNNING_ERROR)

        self._running = True
        run_id = uuid.uuid4().hex[:12]
        set_sync_run_context(run_id)
        started = time.monotonic()
        try:
            tracer = get_tracer()
            with tracer.start_as_current_span(RUN_SPAN_NAME) as span:
                span.set_attribute("callsync.run_id", run_id)
                logger.info("Starting call sync")
                await self._emit(SyncEventType.STARTED, run_id)
                try:
                    result = await self._pipeline.execute()
                except Exception as exc:
                    result = SyncRunResult(
                        success=False,
                        error=str(exc) or type(exc).__name__,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    )
                    self._history.appendleft(result)
                    span.set_status(trace.StatusCode.ERROR, str(exc))
                    self._metrics.record_run("failed", result.duration_ms)
                    logger.error("Sync failed: %s", result.error)
                    await self._emit(SyncEventType.FAILED, run_id, result)
                    raise

                self._history.appendleft(result)
                tag_run_span(
                    span,
                    result.model_dump(
                        include={
                            "total_calls",
                            "matched_calls",
                            "unmatched_calls",
                            "pages_processed",
                            "failed_batches",
                            "partial",
                            "no_op",
                        }
                    ),
                )
                self._metrics.record_run("no_op" if result.no_op else "completed", result.duration_ms)
                logger.info(
                    "Sync completed: total=%d matched=%d unmatched=%d pages=%d duration_ms=%d%s",
                    result.total_calls,
                    result.matched_calls,
                    result.unmatched_calls,
                    result.pages_processed,
                    result.duration_ms,
                    " (partial)" if result.partial else "",
                )
                await self._emit(SyncEventType.COMPLETED, run_id, result)
                return result
        finally:
            self._running = False
            set_sync_run_context(None)

    def trigger_run(self) -> asyncio.Task[SyncRunResult | None]:
        """Start a run in the background and return immediately.

        Failures are logged by the task; the returned task resolves to the
        result, or ``None`` when the run raised.
        """
        task = asyncio.create_task(self._run_logged(), name="callsync-run")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def get_status(self, history_limit: int = DEFAULT_STATUS_HISTORY) -> SyncStatus:
        history = list(self._history)
        return SyncStatus(
            running=self._running,
            last_run=history[0] if history else None,
            watermark=await self._store.get_state(),
            history=history[: max(0, history_limit)],
        )

    async def reset_state(self) -> None:
        """Clear the watermark and run history.

        Raises
        ------
        SyncInProgressError
            If a run is in progress.
        """
        if self._running:
            raise SyncInProgressError("Cannot reset state while sync is running")
        await self._store.reset()
        self._history.clear()
        logger.info("Sync state reset")

    async def shutdown(self) -> None:
        """Wait for background runs, then release HTTP clients."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self._source.shutdown()
        await self._client.shutdown()

    async def _run_logged(self) -> SyncRunResult | None:
        try:
            return await self.run()
        except Exception:
            logger.exception("Background sync run failed")
            return None

    async def _emit(
        self,
        event_type: SyncEventType,
        run_id: str,
        result: SyncRunResult | None = None,
    ) -> None:
        try:
            await self._event_sink.emit(SyncEvent(type=event_type, run_id=run_id, result=result))
        except Exception:
            logger.warning("Event sink failed to deliver %s", event_type, exc_info=True)
