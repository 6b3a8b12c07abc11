"""
OpenTelemetry Metrics

Every instrument the package records is declared in INSTRUMENTS; call
sites refer to them by name. Instruments are created on first use
against whichever meter provider is installed at that moment, and
recreated after init_metrics() swaps the provider.
"""

import logging
from typing import Any, Dict, NamedTuple, Optional, Union

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

METER_NAME = "txoutbox"


class Instrument(NamedTuple):
    kind: str  # "counter" or "histogram"
    description: str
    unit: str


INSTRUMENTS: Dict[str, Instrument] = {
    # Outbox lifecycle
    "outbox_enqueued_total": Instrument("counter", "Events written to the outbox", "1"),
    "outbox_published_total": Instrument("counter", "Events delivered to the sink", "1"),
    "outbox_failed_total": Instrument("counter", "Failed delivery attempts", "1"),
    "outbox_dead_letter_total": Instrument("counter", "Events moved to dead_letter", "1"),
    "janitor_deleted_total": Instrument("counter", "Outbox rows removed by retention", "1"),
    # Entities
    "entity_conflicts_total": Instrument("counter", "Optimistic-lock conflicts", "1"),
    # Timings
    "outbox_delivery_duration_seconds": Instrument("histogram", "Event sink publish duration", "s"),
    "outbox_batch_duration_seconds": Instrument("histogram", "Relay batch duration", "s"),
}

_instruments: Dict[str, Union[metrics.Counter, metrics.Histogram]] = {}


def init_metrics(
    service_name: str = "txoutbox",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000
) -> MeterProvider:
    """Install a meter provider, exporting periodically over OTLP and/or to the console."""
    readers = []
    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"Metrics: exporting to {otlp_endpoint} every {export_interval_ms}ms")
    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))

    provider = MeterProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        metric_readers=readers
    )
    metrics.set_meter_provider(provider)
    _instruments.clear()

    logger.info(f"Metrics initialized for {service_name}")
    return provider


def get_meter() -> metrics.Meter:
    return metrics.get_meter(METER_NAME)


def _instrument(name: str, kind: str):
    declared = INSTRUMENTS.get(name)
    if declared is None or declared.kind != kind:
        logger.debug(f"Ignoring undeclared {kind} {name}")
        return None

    instrument = _instruments.get(name)
    if instrument is not None:
        return instrument

    meter = get_meter()
    if kind == "counter":
        instrument = meter.create_counter(name, unit=declared.unit, description=declared.description)
    else:
        instrument = meter.create_histogram(name, unit=declared.unit, description=declared.description)
    _instruments[name] = instrument
    return instrument


def record_counter(name: str, value: int = 1, attributes: Optional[Dict[str, Any]] = None):
    """Add to a declared counter; undeclared names are ignored."""
    counter = _instrument(name, "counter")
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Optional[Dict[str, Any]] = None):
    """Record into a declared histogram; undeclared names are ignored."""
    histogram = _instrument(name, "histogram")
    if histogram is not None:
        histogram.record(value, attributes or {})
