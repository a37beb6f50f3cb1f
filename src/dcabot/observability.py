from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from dcabot.config import Settings
from dcabot.logging_context import get_logging_context

logger = logging.getLogger(__name__)

METRIC_PREFIX = "dcabot."


def metric_name(name: str) -> str:
    """``executions_settled_total`` -> ``dcabot.executions_settled_total``."""
    cleaned = "".join(ch if ch.isalnum() or ch in "_." else "_" for ch in name).strip("_.")
    if not cleaned:
        raise ValueError(f"invalid metric name {name!r}")
    return cleaned if cleaned.startswith(METRIC_PREFIX) else METRIC_PREFIX + cleaned


def span_attributes(attrs: dict[str, Any] | None) -> dict[str, Any]:
    # Spans carry the same vault/request correlation ids as the log lines.
    merged: dict[str, Any] = {key: value for key, value in get_logging_context().items()}
    for key, value in (attrs or {}).items():
        if value is not None:
            merged[key] = value
    return merged


class Instrumentation:
    """Metrics and tracing hooks used by the services; every call is a no-op here."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    @contextmanager
    def timed(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        """Record the wall time of the block in milliseconds, even when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.histogram(name, (time.perf_counter() - started) * 1000.0, attrs=attrs)

    def flush(self) -> None:
        return None

    def shutdown(self) -> None:
        return None


class NoopInstrumentation(Instrumentation):
    pass


def _metric_readers(settings: Settings) -> list[Any]:
    exporter = settings.observability_metrics_exporter
    if exporter == "otlp":
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

        endpoint = settings.otel_exporter_otlp_endpoint
        metric_exporter = (
            OTLPMetricExporter(endpoint=endpoint) if endpoint else OTLPMetricExporter()
        )
        return [PeriodicExportingMetricReader(metric_exporter)]
    if exporter == "prometheus":
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        # Scrape endpoint for long-running `run-keeper --loop` processes.
        start_http_server(settings.observability_prometheus_port)
        return [PrometheusMetricReader()]
    return []


class OTelInstrumentation(Instrumentation):
    def __init__(self, settings: Settings) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create(
            {
                "service.name": settings.service_name,
                "dcabot.state_db": settings.state_db_path,
            }
        )
        endpoint = settings.otel_exporter_otlp_endpoint
        span_exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
        self._trace_provider = TracerProvider(resource=resource)
        self._trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(self._trace_provider)
        self._tracer = trace.get_tracer(settings.service_name)

        self._metric_provider = MeterProvider(
            resource=resource, metric_readers=_metric_readers(settings)
        )
        metrics.set_meter_provider(self._metric_provider)
        self._meter = metrics.get_meter(settings.service_name)
        self._instruments: dict[tuple[str, str], Any] = {}

    def _instrument(self, kind: str, name: str) -> Any:
        key = (kind, metric_name(name))
        instrument = self._instruments.get(key)
        if instrument is None:
            if kind == "counter":
                instrument = self._meter.create_counter(key[1])
            else:
                instrument = self._meter.create_histogram(key[1], unit="ms")
            self._instruments[key] = instrument
        return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("counter", name).add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("histogram", name).record(value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name, attributes=span_attributes(attrs)):
            yield

    def flush(self) -> None:
        self._metric_provider.force_flush()
        self._trace_provider.force_flush()

    def shutdown(self) -> None:
        self.flush()
        self._metric_provider.shutdown()
        self._trace_provider.shutdown()


_LOCK = threading.Lock()
_INSTRUMENTATION: Instrumentation = NoopInstrumentation()
_CONFIGURED_ONCE = False


def configure_instrumentation(settings: Settings) -> Instrumentation:
    """Install the process-wide instrumentation; later calls keep the first one."""
    global _INSTRUMENTATION, _CONFIGURED_ONCE
    with _LOCK:
        if _CONFIGURED_ONCE:
            return _INSTRUMENTATION
        _CONFIGURED_ONCE = True
        if not settings.observability_enabled:
            _INSTRUMENTATION = NoopInstrumentation()
            return _INSTRUMENTATION
        try:
            _INSTRUMENTATION = OTelInstrumentation(settings)
        except Exception:  # noqa: BLE001
            logger.exception(
                "observability_setup_failed_falling_back_to_noop",
                extra={
                    "extra": {"metrics_exporter": settings.observability_metrics_exporter}
                },
            )
            _INSTRUMENTATION = NoopInstrumentation()
        return _INSTRUMENTATION


def set_instrumentation(instrumentation: Instrumentation) -> None:
    global _INSTRUMENTATION
    with _LOCK:
        _INSTRUMENTATION = instrumentation


def get_instrumentation() -> Instrumentation:
    return _INSTRUMENTATION


def flush_instrumentation() -> None:
    _INSTRUMENTATION.flush()


def shutdown_instrumentation() -> None:
    _INSTRUMENTATION.shutdown()
