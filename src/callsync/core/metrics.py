"""OpenTelemetry metrics instruments for sync runs.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  callsync.runs_total               Counter  (label: outcome=completed|failed|no_op)
      Sync runs by outcome.

  callsync.calls_synced_total       Counter  (label: match_status)
      Calls processed (submitted for upsert) per match outcome
      (matched, unmatched, no_phone).  Records in batches that later fail
      are still counted; see failed_batches_total.

  callsync.failed_batches_total     Counter
      Destination batches dropped after exhausting retries.

  callsync.run_duration_ms          Histogram
      End-to-end run duration in milliseconds.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "callsync"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str = "callsync") -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the sync process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: Service name attached to the meter resource.

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before ``init_metrics``; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Lazily-created sync instruments with small recording helpers.

    Safe to construct before ``init_metrics`` is called; recordings are
    no-ops until a real provider is installed.
    """

    def __init__(self) -> None:
        self.__runs: metrics.Counter | None = None
        self.__calls: metrics.Counter | None = None
        self.__failed_batches: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _runs(self) -> metrics.Counter:
        if self.__runs is None:
            self.__runs = get_meter().create_counter(
                name="callsync.runs_total",
                description="Sync runs by outcome",
                unit="runs",
            )
        return self.__runs

    @property
    def _calls(self) -> metrics.Counter:
        if self.__calls is None:
            self.__calls = get_meter().create_counter(
                name="callsync.calls_synced_total",
                description="Calls processed (submitted for upsert) by match status",
                unit="calls",
            )
        return self.__calls

    @property
    def _failed_batches(self) -> metrics.Counter:
        if self.__failed_batches is None:
            self.__failed_batches = get_meter().create_counter(
                name="callsync.failed_batches_total",
                description="Destination batches dropped after exhausting retries",
                unit="batches",
            )
        return self.__failed_batches

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="callsync.run_duration_ms",
                description="End-to-end sync run duration in milliseconds",
                unit="ms",
            )
        return self.__duration

    # -- recording helpers ----------------------------------------------------

    def record_run(self, outcome: str, duration_ms: int) -> None:
        """Record one finished run and its duration."""
        self._runs.add(1, {"outcome": outcome})
        self._duration.record(duration_ms, {"outcome": outcome})

    def record_calls(self, match_status: str, count: int) -> None:
        if count > 0:
            self._calls.add(count, {"match_status": match_status})

    def record_failed_batches(self, count: int) -> None:
        if count > 0:
            self._failed_batches.add(count)
