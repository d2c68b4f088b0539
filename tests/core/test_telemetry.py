"""Tests for tracing helpers."""

from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from callsync.core.telemetry import RUN_SPAN_NAME, init_telemetry, tag_run_span

pytestmark = pytest.mark.unit


@pytest.fixture
def exporter():
    in_memory = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(in_memory))
    yield in_memory, provider.get_tracer("test")
    provider.shutdown()


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("callsync-test")
        with tracer.start_as_current_span("noop") as span:
            assert not span.is_recording()


class TestTagRunSpan:
    def test_prefixes_and_skips_none(self, exporter):
        in_memory, tracer = exporter
        with tracer.start_as_current_span(RUN_SPAN_NAME) as span:
            tag_run_span(
                span,
                {"total_calls": 50, "partial": True, "error": None, "window": ("a", "b")},
            )

        (finished,) = in_memory.get_finished_spans()
        assert finished.name == "callsync.run"
        assert finished.attributes["callsync.total_calls"] == 50
        assert finished.attributes["callsync.partial"] is True
        assert "callsync.error" not in finished.attributes
        assert finished.attributes["callsync.window"] == "('a', 'b')"
