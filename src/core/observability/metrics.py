"""
OpenTelemetry Metrics

Counters for the batch lifecycle and the delivery worker, and a histogram
of delivery step durations. Instruments are created on first use against
whatever meter provider is installed (the API's no-op one by default).
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from .tracing import SERVICE

logger = logging.getLogger(__name__)

COUNTERS = {
    "outbox_delivered_total": "Outbox tasks delivered to the document database",
    "outbox_retried_total": "Outbox tasks rescheduled after a retryable failure",
    "outbox_dead_lettered_total": "Outbox tasks that failed terminally",
    "outbox_skipped_total": "Outbox tasks completed without a delivery call",
    "batches_committed_total": "Batches committed",
    "batches_rolled_back_total": "Batches rolled back",
}

HISTOGRAMS = {
    "outbox_processing_duration_seconds": "Time spent on one delivery step",
}

_meter: Optional[metrics.Meter] = None
_instruments: Dict[str, Any] = {}


def init_metrics(otlp_endpoint: str, export_interval_ms: int = 60000) -> metrics.Meter:
    """Install an SDK meter provider exporting to an OTLP gRPC collector."""
    global _meter

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
        export_interval_millis=export_interval_ms,
    )
    metrics.set_meter_provider(
        MeterProvider(resource=Resource.create({SERVICE_NAME: SERVICE}), metric_readers=[reader])
    )
    _meter = metrics.get_meter(SERVICE)
    # Instruments made against the previous provider are stale
    _instruments.clear()

    logger.info(f"Metrics export enabled -> {otlp_endpoint}")
    return _meter


def get_meter() -> metrics.Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(SERVICE)
    return _meter


def _instrument(name: str):
    if name in _instruments:
        return _instruments[name]
    if name in COUNTERS:
        instrument = get_meter().create_counter(name, description=COUNTERS[name], unit="1")
    elif name in HISTOGRAMS:
        instrument = get_meter().create_histogram(name, description=HISTOGRAMS[name], unit="s")
    else:
        return None
    _instruments[name] = instrument
    return instrument


def record_counter(name: str, value: int = 1, attributes: Optional[Dict[str, Any]] = None) -> None:
    """Add to a counter from COUNTERS. Unknown names are ignored."""
    if name not in COUNTERS:
        return
    _instrument(name).add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Optional[Dict[str, Any]] = None) -> None:
    """Record into a histogram from HISTOGRAMS. Unknown names are ignored."""
    if name not in HISTOGRAMS:
        return
    _instrument(name).record(value, attributes or {})
