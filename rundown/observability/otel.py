"""OpenTelemetry + Prometheus fallback wiring for the Rundown service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from rundown import config

logger = logging.getLogger("rundown.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_embedding_counter: Any | None = None
_cache_counter: Any | None = None
_distill_counter: Any | None = None
_distill_latency_hist: Any | None = None

_prom_enabled = False
_prom_embedding_counter: Any | None = None
_prom_cache_counter: Any | None = None
_prom_distill_counter: Any | None = None
_prom_distill_latency_hist: Any | None = None


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


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _embedding_counter, _cache_counter, _distill_counter, _distill_latency_hist
    global _prom_enabled, _prom_embedding_counter, _prom_cache_counter
    global _prom_distill_counter, _prom_distill_latency_hist

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (RUNDOWN_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "rundown"

    resource = Resource.create({"service.name": service_name, "service.namespace": "rundown"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("rundown")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("rundown")

    _embedding_counter = meter.create_counter(
        "rundown_embedding_texts_total",
        unit="1",
        description="Texts sent to the embedding provider",
    )
    _cache_counter = meter.create_counter(
        "rundown_vector_cache_lookups_total",
        unit="1",
        description="Vector cache lookups by entity type and outcome",
    )
    _distill_counter = meter.create_counter(
        "rundown_distill_sections_total",
        unit="1",
        description="Briefing sections computed, by outcome",
    )
    _distill_latency_hist = meter.create_histogram(
        "rundown_distill_section_ms",
        unit="ms",
        description="Latency of briefing sub-scorers",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_embedding_counter = Counter(
                "rundown_embedding_texts_total",
                "Texts sent to the embedding provider",
                ["kind", "result"],
            )
            _prom_cache_counter = Counter(
                "rundown_vector_cache_lookups_total",
                "Vector cache lookups by entity type and outcome",
                ["entity_type", "result"],
            )
            _prom_distill_counter = Counter(
                "rundown_distill_sections_total",
                "Briefing sections computed, by outcome",
                ["section", "result"],
            )
            _prom_distill_latency_hist = Histogram(
                "rundown_distill_section_ms",
                "Latency of briefing sub-scorers",
                ["section"],
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
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
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


def record_embedding_request(kind: str, count: int, ok: bool) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = _labels(kind=kind, result="ok" if ok else "error")
    if _enabled and _embedding_counter is not None:
        _embedding_counter.add(safe_count, labels)
    if _prom_enabled and _prom_embedding_counter is not None:
        _prom_embedding_counter.labels(**labels).inc(safe_count)


def record_cache_lookup(entity_type: str, hit: bool) -> None:
    labels = _labels(entity_type=entity_type, result="hit" if hit else "miss")
    if _enabled and _cache_counter is not None:
        _cache_counter.add(1, labels)
    if _prom_enabled and _prom_cache_counter is not None:
        _prom_cache_counter.labels(**labels).inc()


def record_distill(section: str, ok: bool, duration_ms: float) -> None:
    labels = _labels(section=section, result="ok" if ok else "error")
    if _enabled and _distill_counter is not None:
        _distill_counter.add(1, labels)
    if _enabled and _distill_latency_hist is not None:
        _distill_latency_hist.record(max(0.0, float(duration_ms)), {"section": labels["section"]})
    if _prom_enabled and _prom_distill_counter is not None:
        _prom_distill_counter.labels(**labels).inc()
    if _prom_enabled and _prom_distill_latency_hist is not None:
        _prom_distill_latency_hist.labels(section=labels["section"]).observe(max(0.0, float(duration_ms)))
