"""OpenTelemetry + Prometheus fallback wiring for the claude-run backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from claude_run import config

logger = logging.getLogger("claude_run.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_scan_counter: Any | None = None
_scan_latency_hist: Any | None = None
_stream_bytes_counter: Any | None = None
_stream_messages_counter: Any | None = None

_prom_enabled = False
_prom_scan_counter: Any | None = None
_prom_scan_latency_hist: Any | None = None
_prom_stream_bytes_counter: Any | None = None
_prom_stream_messages_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _scan_counter, _scan_latency_hist, _stream_bytes_counter, _stream_messages_counter
    global _prom_enabled
    global _prom_scan_counter, _prom_scan_latency_hist, _prom_stream_bytes_counter, _prom_stream_messages_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CLAUDE_RUN_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "claude-run"

    resource = Resource.create({"service.name": service_name, "service.namespace": "claude-run"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("claude_run.storage")

    _scan_counter = meter.create_counter(
        "claude_run_scans_total",
        unit="1",
        description="Directory scans and log loads performed by the storage engine",
    )
    _scan_latency_hist = meter.create_histogram(
        "claude_run_scan_latency_ms",
        unit="ms",
        description="Latency of directory scans and log loads",
    )
    _stream_bytes_counter = meter.create_counter(
        "claude_run_stream_bytes_total",
        unit="By",
        description="Session log bytes consumed by incremental reads",
    )
    _stream_messages_counter = meter.create_counter(
        "claude_run_stream_messages_total",
        unit="1",
        description="Messages emitted by incremental reads",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("claude_run.storage")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_scan_counter = Counter(
                "claude_run_scans_total",
                "Directory scans and log loads performed by the storage engine",
                ["kind", "result"],
            )
            _prom_scan_latency_hist = Histogram(
                "claude_run_scan_latency_ms",
                "Latency of directory scans and log loads",
                ["kind", "result"],
            )
            _prom_stream_bytes_counter = Counter(
                "claude_run_stream_bytes_total",
                "Session log bytes consumed by incremental reads",
            )
            _prom_stream_messages_counter = Counter(
                "claude_run_stream_messages_total",
                "Messages emitted by incremental reads",
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Meter provider shutdown failed: %s", exc)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Trace provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_scan(kind: str, result: str, duration_ms: float) -> None:
    labels = {
        "kind": kind or "unknown",
        "result": result or "unknown",
    }
    if _enabled and _scan_counter is not None:
        _scan_counter.add(1, labels)
    if _enabled and _scan_latency_hist is not None:
        _scan_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_scan_counter is not None:
        _prom_scan_counter.labels(**labels).inc()
    if _prom_enabled and _prom_scan_latency_hist is not None:
        _prom_scan_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_stream_read(bytes_read: int, messages: int) -> None:
    safe_bytes = max(0, int(bytes_read))
    safe_messages = max(0, int(messages))
    if _enabled and _stream_bytes_counter is not None and safe_bytes:
        _stream_bytes_counter.add(safe_bytes)
    if _enabled and _stream_messages_counter is not None and safe_messages:
        _stream_messages_counter.add(safe_messages)
    if _prom_enabled and _prom_stream_bytes_counter is not None and safe_bytes:
        _prom_stream_bytes_counter.inc(safe_bytes)
    if _prom_enabled and _prom_stream_messages_counter is not None and safe_messages:
        _prom_stream_messages_counter.inc(safe_messages)
