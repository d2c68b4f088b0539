"""Tests for the per-run pipeline and the sync orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from callsync.config import SyncConfig
from callsync.engine import (
    ALREADY_RUNNING_ERROR,
    SyncEvent,
    SyncEventType,
    SyncOrchestrator,
)
from callsync.errors import DestinationRequestError, SourceRequestError, SyncInProgressError
from callsync.models import CallPage
from callsync.pipeline import SyncPipeline
from callsync.retry import RetryPolicy
from callsync.source import CallSource, parse_call_page
from callsync.state import WatermarkStore

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _FeedDouble(CallSource):
    """Serves scripted pages; exception entries are raised instead."""

    def __init__(
        self,
        pages: list[CallPage | Exception],
        *,
        company_numbers: list[str] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.pages = list(pages)
        self.company_numbers = company_numbers or []
        self.gate = gate
        self.entered = asyncio.Event()
        self.calls: list[dict[str, Any]] = []
        self.company_number_requests = 0

    @property
    def name(self) -> str:
        return "feed-double"

    async def fetch_page(self, start, end, cursor=None) -> CallPage:
        self.calls.append({"start": start, "end": end, "cursor": cursor})
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.pages:
            return CallPage()
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def list_company_numbers(self) -> list[str]:
        self.company_number_requests += 1
        return list(self.company_numbers)


class _CrmDouble:
    """In-memory customers table, an upsert log and the merged calls table."""

    def __init__(
        self,
        customers: list[dict[str, Any]] | None = None,
        *,
        list_error: Exception | None = None,
        upsert_error: Exception | None = None,
    ) -> None:
        self.customers = customers if customers is not None else []
        self.list_error = list_error
        self.upsert_error = upsert_error
        self.list_calls = 0
        self.batches: list[list[dict[str, Any]]] = []
        self.merge_keys: list[list[str]] = []
        self.rows: dict[Any, dict[str, Any]] = {}
        self.retry_policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, jitter_factor=0)
        self.closed = False

    async def list_records(self, table, *, fields=(), offset=None, page_size=100):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.customers), None

    async def upsert_records(self, table, records, *, merge_on):
        if self.upsert_error is not None:
            raise self.upsert_error
        self.batches.append(list(records))
        self.merge_keys.append(list(merge_on))
        for fields in records:
            self.rows.setdefault(fields[merge_on[0]], {}).update(fields)
        return {"records": []}

    async def shutdown(self) -> None:
        self.closed = True

    @property
    def written(self) -> list[dict[str, Any]]:
        return [fields for batch in self.batches for fields in batch]


class _RecordingSink:
    def __init__(self) -> None:
        self.events: list[SyncEvent] = []

    async def emit(self, event: SyncEvent) -> None:
        self.events.append(event)


class _ExplodingSink:
    async def emit(self, event: SyncEvent) -> None:
        raise RuntimeError("push channel down")


_CUSTOMERS = [
    {"id": "recAlice", "fields": {"Phone": "9123 4567"}},
    {"id": "recBob", "fields": {"Phone": "+65 8765 4321"}},
]


@pytest.fixture
def make_page() -> Callable[..., CallPage]:
    def _make(payloads: list[dict[str, Any]], cursor: str | None = None) -> CallPage:
        return parse_call_page({"items": payloads, "cursor": cursor})

    return _make


def _pipeline(
    config: SyncConfig,
    feed: _FeedDouble,
    crm: _CrmDouble,
    now: datetime,
    sleeps: _Sleeps | None = None,
) -> tuple[SyncPipeline, WatermarkStore]:
    store = WatermarkStore(config.state_dir)
    pipeline = SyncPipeline(
        config,
        source=feed,
        client=crm,  # type: ignore[arg-type]
        store=store,
        clock=lambda: now,
        sleep=sleeps or _Sleeps(),
    )
    return pipeline, store


def _orchestrator(
    config: SyncConfig,
    feed: _FeedDouble,
    crm: _CrmDouble,
    now: datetime,
    sink=None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        config,
        source=feed,
        client=crm,  # type: ignore[arg-type]
        store=WatermarkStore(config.state_dir),
        event_sink=sink,
        clock=lambda: now,
        sleep=_Sleeps(),
    )


# ---------------------------------------------------------------------------
# SyncPipeline
# ---------------------------------------------------------------------------


class TestSyncPipeline:
    async def test_classifies_and_writes_calls(self, make_config, make_page, call_payload, fixed_now):
        feed = _FeedDouble(
            [
                make_page(
                    [
                        call_payload("matched", external_number="+6591234567"),
                        call_payload("unmatched", external_number="+6580000000"),
                        call_payload("no-phone", external_number=None),
                        call_payload("internal", external_number="+6560000000"),
                    ]
                )
            ],
            company_numbers=["6000 0000"],
        )
        crm = _CrmDouble(_CUSTOMERS)
        pipeline, store = _pipeline(make_config(), feed, crm, fixed_now)

        result = await pipeline.execute()

        assert result.success
        assert result.total_calls == 3
        assert result.matched_calls == 1
        assert result.unmatched_calls == 2
        assert result.skipped_internal_calls == 1
        assert result.pages_processed == 1
        assert not result.partial

        by_id = {fields["Call ID"]: fields for fields in crm.written}
        assert set(by_id) == {"matched", "unmatched", "no-phone"}
        assert by_id["matched"]["Customer"] == ["recAlice"]
        assert by_id["unmatched"]["Unmatched Phone"] == "+6580000000"
        assert "Customer" not in by_id["no-phone"]
        assert "Unmatched Phone" not in by_id["no-phone"]
        assert crm.merge_keys == [["Call ID"]]
        assert await store.get_watermark() == int(fixed_now.timestamp())

    async def test_internal_filter_disabled(self, make_config, make_page, call_payload, fixed_now):
        feed = _FeedDouble(
            [make_page([call_payload("internal", external_number="+6560000000")])],
            company_numbers=["+6560000000"],
        )
        pipeline, _ = _pipeline(make_config(skip_internal_calls=False), feed, _CrmDouble(), fixed_now)

        result = await pipeline.execute()

        assert feed.company_number_requests == 0
        assert result.total_calls == 1
        assert result.skipped_internal_calls == 0

    async def test_later_page_failure_is_partial_success(
        self, make_config, make_page, call_payload, fixed_now
    ):
        feed = _FeedDouble(
            [
                make_page([call_payload(f"c-{i}") for i in range(50)], cursor="c1"),
                SourceRequestError(status_code=503, message="feed unavailable"),
            ]
        )
        crm = _CrmDouble(_CUSTOMERS)
        sleeps = _Sleeps()
        pipeline, store = _pipeline(make_config(), feed, crm, fixed_now, sleeps)

        result = await pipeline.execute()

        assert result.success is True
        assert result.total_calls == 50
        assert result.matched_calls == 50
        assert result.pages_processed == 1
        assert result.partial
        assert result.error is not None and "page 2" in result.error
        assert [len(batch) for batch in crm.batches] == [10] * 5
        assert sleeps.delays == [pytest.approx(0.2)] * 5
        assert await store.get_watermark() == int(fixed_now.timestamp())

    async def test_first_page_failure_raises_without_advancing(
        self, make_config, fixed_now
    ):
        feed = _FeedDouble([SourceRequestError(status_code=500, message="down")])
        pipeline, store = _pipeline(make_config(), feed, _CrmDouble(), fixed_now)

        with pytest.raises(SourceRequestError):
            await pipeline.execute()
        assert await store.get_watermark() == 0

    async def test_directory_load_failure_raises(self, make_config, fixed_now):
        feed = _FeedDouble([])
        crm = _CrmDouble(list_error=DestinationRequestError(status_code=401, message="bad token"))
        pipeline, _ = _pipeline(make_config(), feed, crm, fixed_now)

        with pytest.raises(DestinationRequestError):
            await pipeline.execute()
        assert feed.calls == []

    async def test_failed_batches_counted_and_watermark_still_advanced(
        self, make_config, make_page, call_payload, fixed_now
    ):
        feed = _FeedDouble([make_page([call_payload(f"c-{i}") for i in range(12)])])
        crm = _CrmDouble(upsert_error=DestinationRequestError(status_code=503, message="busy"))
        pipeline, store = _pipeline(make_config(), feed, crm, fixed_now)

        result = await pipeline.execute()

        assert result.success
        assert result.failed_batches == 2
        assert result.total_calls == 12
        assert await store.get_watermark() == int(fixed_now.timestamp())

    async def test_page_cap_marks_partial(self, make_config, make_page, call_payload, fixed_now):
        feed = _FeedDouble(
            [make_page([call_payload(f"c-{i}")], cursor=f"next-{i}") for i in range(5)]
        )
        pipeline, _ = _pipeline(make_config(source={"max_pages": 2}), feed, _CrmDouble(), fixed_now)

        result = await pipeline.execute()

        assert result.pages_processed == 2
        assert result.total_calls == 2
        assert result.partial
        assert result.error is None

    async def test_empty_window_is_noop(self, make_config, fixed_now):
        # 21:00-23:00 Singapore has not started at 20:00 local.
        config = make_config(window={"time_range": "21:00-23:00"})
        feed = _FeedDouble([])
        crm = _CrmDouble()
        pipeline, store = _pipeline(config, feed, crm, fixed_now)

        result = await pipeline.execute()

        assert result.success
        assert result.no_op
        assert result.total_calls == 0
        assert feed.calls == []
        assert crm.list_calls == 0
        assert await store.get_watermark() == 0

    async def test_resumes_from_watermark_minus_grace(self, make_config, fixed_now):
        config = make_config()
        feed = _FeedDouble([])
        pipeline, store = _pipeline(config, feed, _CrmDouble(), fixed_now)
        watermark = fixed_now - timedelta(hours=1)
        await store.set_watermark(int(watermark.timestamp()))

        result = await pipeline.execute()

        assert feed.calls[0]["start"] == watermark - timedelta(hours=6)
        assert feed.calls[0]["end"] == fixed_now
        assert result.window_start == watermark - timedelta(hours=6)
        assert result.pages_processed == 0

    async def test_backfill_does_not_move_watermark_backwards(
        self, make_config, make_page, call_payload, fixed_now
    ):
        config = make_config(window={"sync_date": "2025-03-01"})
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        pipeline, store = _pipeline(config, feed, _CrmDouble(), fixed_now)
        recent = int(fixed_now.timestamp()) - 60
        await store.set_watermark(recent)

        result = await pipeline.execute()

        assert result.pages_processed == 1
        assert result.window_end < fixed_now - timedelta(days=8)
        assert await store.get_watermark() == recent

    async def test_rerun_updates_rows_in_place(self, make_config, make_page, call_payload, fixed_now):
        config = make_config()
        crm = _CrmDouble(_CUSTOMERS)
        first, _ = _pipeline(
            config, _FeedDouble([make_page([call_payload("c-1")])]), crm, fixed_now
        )
        await first.execute()

        renamed = call_payload("c-1", contact={"name": "Alice Lim"})
        second, _ = _pipeline(config, _FeedDouble([make_page([renamed])]), crm, fixed_now)
        await second.execute()

        assert list(crm.rows) == ["c-1"]
        assert crm.rows["c-1"]["Contact Name"] == "Alice Lim"
        assert crm.rows["c-1"]["Customer"] == ["recAlice"]
        assert len(crm.batches) == 2


# ---------------------------------------------------------------------------
# SyncOrchestrator
# ---------------------------------------------------------------------------


class TestSyncOrchestrator:
    async def test_successful_run_emits_started_and_completed(
        self, make_config, make_page, call_payload, fixed_now
    ):
        sink = _RecordingSink()
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(_CUSTOMERS), fixed_now, sink)

        result = await orchestrator.run()

        assert result.success
        assert [event.type for event in sink.events] == [
            SyncEventType.STARTED,
            SyncEventType.COMPLETED,
        ]
        assert sink.events[0].run_id == sink.events[1].run_id
        assert sink.events[1].result == result
        assert orchestrator.history == [result]
        assert not orchestrator.running

    async def test_failure_records_emits_and_reraises(self, make_config, fixed_now):
        sink = _RecordingSink()
        feed = _FeedDouble([SourceRequestError(status_code=500, message="down")])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now, sink)

        with pytest.raises(SourceRequestError):
            await orchestrator.run()

        assert [event.type for event in sink.events] == [
            SyncEventType.STARTED,
            SyncEventType.FAILED,
        ]
        failed = orchestrator.history[0]
        assert failed.success is False
        assert failed.error is not None and "500" in failed.error
        assert sink.events[1].result == failed
        assert not orchestrator.running

    async def test_concurrent_run_rejected_without_queueing(
        self, make_config, make_page, call_payload, fixed_now
    ):
        gate = asyncio.Event()
        feed = _FeedDouble([make_page([call_payload("c-1")])], gate=gate)
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)

        first = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(feed.entered.wait(), timeout=1)
        assert orchestrator.running

        rejected = await orchestrator.run()
        assert rejected.success is False
        assert rejected.error == ALREADY_RUNNING_ERROR

        gate.set()
        result = await first
        assert result.success
        assert orchestrator.history == [result]
        assert len(feed.calls) == 1

    async def test_reset_while_running_raises(self, make_config, make_page, call_payload, fixed_now):
        gate = asyncio.Event()
        feed = _FeedDouble([make_page([call_payload("c-1")])], gate=gate)
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)

        task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(feed.entered.wait(), timeout=1)
        with pytest.raises(SyncInProgressError):
            await orchestrator.reset_state()
        gate.set()
        await task

    async def test_reset_clears_watermark_and_history(
        self, make_config, make_page, call_payload, fixed_now
    ):
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)
        await orchestrator.run()
        assert await orchestrator.store.get_watermark() > 0

        await orchestrator.reset_state()

        assert await orchestrator.store.get_watermark() == 0
        assert orchestrator.history == []
        status = await orchestrator.get_status()
        assert status.last_run is None
        assert status.watermark is None

    async def test_history_is_bounded_newest_first(self, make_config, fixed_now):
        config = make_config(history_limit=3, window={"time_range": "21:00-23:00"})
        orchestrator = _orchestrator(config, _FeedDouble([]), _CrmDouble(), fixed_now)

        results = [await orchestrator.run() for _ in range(5)]

        assert orchestrator.history == list(reversed(results))[:3]
        assert all(result.no_op for result in results)

    async def test_status_returns_last_ten(self, make_config, fixed_now):
        config = make_config(window={"time_range": "21:00-23:00"})
        orchestrator = _orchestrator(config, _FeedDouble([]), _CrmDouble(), fixed_now)
        for _ in range(12):
            await orchestrator.run()

        status = await orchestrator.get_status()

        assert status.running is False
        assert len(status.history) == 10
        assert status.history == orchestrator.history[:10]
        assert status.last_run == orchestrator.history[0]
        assert len(orchestrator.history) == 12

    async def test_status_includes_watermark(self, make_config, make_page, call_payload, fixed_now):
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)
        await orchestrator.run()

        status = await orchestrator.get_status(history_limit=1)

        assert status.watermark is not None
        assert status.watermark.last_synced_epoch_s == int(fixed_now.timestamp())
        assert len(status.history) == 1

    async def test_trigger_run_returns_immediately(
        self, make_config, make_page, call_payload, fixed_now
    ):
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)

        task = orchestrator.trigger_run()
        assert not task.done()
        result = await task

        assert result is not None and result.success
        assert orchestrator.history == [result]

    async def test_trigger_run_logs_failures(self, make_config, fixed_now, caplog):
        feed = _FeedDouble([SourceRequestError(status_code=500, message="down")])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)

        result = await orchestrator.trigger_run()

        assert result is None
        assert "Background sync run failed" in caplog.text
        assert orchestrator.history[0].success is False

    async def test_event_sink_failure_does_not_fail_run(
        self, make_config, make_page, call_payload, fixed_now
    ):
        feed = _FeedDouble([make_page([call_payload("c-1")])])
        orchestrator = _orchestrator(
            make_config(), feed, _CrmDouble(), fixed_now, sink=_ExplodingSink()
        )
        result = await orchestrator.run()
        assert result.success

    async def test_shutdown_closes_clients(self, make_config, fixed_now):
        crm = _CrmDouble()
        orchestrator = _orchestrator(make_config(), _FeedDouble([]), crm, fixed_now)
        await orchestrator.shutdown()
        assert crm.closed

    async def test_failed_run_marks_span_once(self, make_config, fixed_now, monkeypatch):
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        monkeypatch.setattr("callsync.engine.get_tracer", lambda: provider.get_tracer("test"))
        feed = _FeedDouble([SourceRequestError(status_code=500, message="down")])
        orchestrator = _orchestrator(make_config(), feed, _CrmDouble(), fixed_now)

        with pytest.raises(SourceRequestError):
            await orchestrator.run()

        (span,) = exporter.get_finished_spans()
        assert span.name == "callsync.run"
        assert span.status.status_code is StatusCode.ERROR
        assert [event.name for event in span.events] == ["exception"]
        provider.shutdown()
