"""One sync run, end to end.

resolve window -> load customer directory -> (fetch page -> transform ->
write -> advance watermark)* -> aggregate counters.

The pipeline has no run guard of its own; :class:`~callsync.engine.SyncOrchestrator`
makes sure only one executes at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass

from .config import SyncConfig
from .core.metrics import SyncMetrics
from .destination import AirtableClient, DestinationWriter
from .directory import CallTransformer, CustomerDirectory
from .models import SyncRunResult, TransformedCallRecord
from .phone import normalize_phone
from .retry import SleepFn
from .source import CallPageFetcher, CallSource
from .state import WatermarkStore
from .window import Clock, SyncWindow, WindowResolver, utc_now

logger = logging.getLogger(__name__)


@dataclass
class _RunCounters:
    total_calls: int = 0
    matched_calls: int = 0
    unmatched_calls: int = 0
    pages_processed: int = 0
    failed_batches: int = 0
    skipped_internal_calls: int = 0

    def count(self, record: TransformedCallRecord) -> None:
        # Calls without a phone count as unmatched.
        self.total_calls += 1
        if record.matched:
            self.matched_calls += 1
        else:
            self.unmatched_calls += 1


class SyncPipeline:
    """Executes a single sync run against the configured source and destination."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        source: CallSource,
        client: AirtableClient,
        store: WatermarkStore,
        clock: Clock = utc_now,
        sleep: SleepFn = asyncio.sleep,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._config = config
        self._source = source
        self._client = client
        self._store = store
        self._metrics = metrics or SyncMetrics()
        self._resolver = WindowResolver(config.window, clock=clock)
        self._writer = DestinationWriter(
            client,
            table=config.destination.calls_table,
            merge_on=config.fields.call_id,
            batch_size=config.destination.batch_size,
            pacing_delay_s=config.destination.pacing_delay_s,
            retry_policy=config.retry,
            sleep=sleep,
        )

    async def execute(self) -> SyncRunResult:
        """Run one sync and return its result.

        Raises
        ------
        Exception
            Window resolution, directory load and first-page failures
            propagate.  Later-page and batch failures are reflected in the
            returned result instead.
        """
        started = time.monotonic()
        counters = _RunCounters()

        watermark = await self._store.get_watermark()
        window = self._resolver.resolve(watermark)
        if window.is_empty:
            logger.info("Sync window is empty, nothing to do")
            return self._result(window, counters, started, no_op=True)

        directory = await CustomerDirectory.load(
            self._client,
            table=self._config.destination.customers_table,
            phone_field=self._config.fields.customer_phone,
            default_region=self._config.default_region,
        )
        transformer = CallTransformer(
            directory,
            self._config.fields,
            company_numbers=await self._company_numbers(),
        )

        fetcher = CallPageFetcher(self._source, max_pages=self._config.source.max_pages)
        async for page in fetcher.pages(window):
            records: list[TransformedCallRecord] = []
            for call in page.items:
                if transformer.is_internal(call):
                    counters.skipped_internal_calls += 1
                    logger.debug("Skipping internal call %s", call.call_id)
                    continue
                record = transformer.transform(call)
                counters.count(record)
                records.append(record)

            summary = await self._writer.upsert(records)
            counters.failed_batches += summary.batches_failed
            self._record_page_metrics(records, summary.batches_failed)
            counters.pages_processed += 1
            # Backfills of past periods must not pull the watermark backwards.
            watermark = max(watermark, int(window.end.timestamp()))
            await self._store.set_watermark(watermark)
            logger.info(
                "Page %d processed: %d call(s), %d written, %d batch(es) failed",
                counters.pages_processed,
                len(records),
                summary.records_written,
                summary.batches_failed,
            )

        return self._result(
            window,
            counters,
            started,
            partial=fetcher.partial,
            error=fetcher.error,
        )

    def _record_page_metrics(self, records: list[TransformedCallRecord], failed_batches: int) -> None:
        by_status = Counter(record.match_status for record in records)
        for status, count in by_status.items():
            self._metrics.record_calls(status, count)
        self._metrics.record_failed_batches(failed_batches)

    async def _company_numbers(self) -> frozenset[str]:
        if not self._config.skip_internal_calls:
            return frozenset()
        raw_numbers = await self._source.list_company_numbers()
        normalized = {normalize_phone(number, self._config.default_region) for number in raw_numbers}
        normalized.discard(None)
        logger.info("Loaded %d company number(s) for internal-call filtering", len(normalized))
        return frozenset(normalized)

    @staticmethod
    def _result(
        window: SyncWindow,
        counters: _RunCounters,
        started: float,
        *,
        no_op: bool = False,
        partial: bool = False,
        error: str | None = None,
    ) -> SyncRunResult:
        return SyncRunResult(
            success=True,
            total_calls=counters.total_calls,
            matched_calls=counters.matched_calls,
            unmatched_calls=counters.unmatched_calls,
            pages_processed=counters.pages_processed,
            failed_batches=counters.failed_batches,
            skipped_internal_calls=counters.skipped_internal_calls,
            no_op=no_op,
            partial=partial,
            window_start=window.start,
            window_end=window.end,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
        )
