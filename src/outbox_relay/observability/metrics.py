"""
OpenTelemetry Metrics

Relay counters and the poll duration histogram.
"""

import logging
from typing import Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

METER_NAME = "outbox-relay"


def init_metrics(
    service_name: str = "outbox-relay",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 15000
) -> MeterProvider:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds

    Returns:
        The installed meter provider (shut it down on exit to flush)
    """
    readers = []

    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)

    logger.info(f"OTel metrics initialized: {service_name}")

    return provider


class RelayMetrics:
    """
    Instruments recorded by the polling loop.

    Labels:
    - schema: source schema name (e.g. 'journey_matcher')
    - table: source table name (e.g. 'outbox' or 'outbox_events')
    - event_type: event type (e.g. 'journey.created')
    """

    def __init__(self, meter: Optional[metrics.Meter] = None):
        meter = meter or metrics.get_meter(METER_NAME)

        self.events_polled = meter.create_counter(
            "outbox_events_polled_total",
            description="Total number of events polled from outbox tables",
            unit="1"
        )
        self.events_published = meter.create_counter(
            "outbox_events_published_total",
            description="Total number of events successfully published to Kafka",
            unit="1"
        )
        self.events_failed = meter.create_counter(
            "outbox_events_failed_total",
            description="Total number of events moved to the dead-letter table",
            unit="1"
        )
        self.poll_duration = meter.create_histogram(
            "outbox_poll_duration_seconds",
            description="Duration of polling and publishing one schema",
            unit="s"
        )

    def record_polled(self, schema: str, table: str, count: int = 1) -> None:
        if count:
            self.events_polled.add(count, {"schema": schema, "table": table})

    def record_published(self, schema: str, table: str, event_type: str) -> None:
        self.events_published.add(1, {"schema": schema, "table": table, "event_type": event_type})

    def record_failed(self, schema: str, table: str, event_type: str) -> None:
        self.events_failed.add(1, {"schema": schema, "table": table, "event_type": event_type})

    def record_poll_duration(self, schema: str, table: str, seconds: float) -> None:
        self.poll_duration.record(seconds, {"schema": schema, "table": table})
