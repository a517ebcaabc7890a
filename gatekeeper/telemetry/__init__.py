"""Admission metrics and request tracing.

Metrics are module level so every pipeline instance in the process shares
them. Tracing stays a no-op until an OTLP endpoint is configured.
"""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from ..core.config import Settings, get_settings

SERVICE_VERSION = "0.1.0"

ADMISSION_DECISIONS = Counter(
    "gatekeeper_admission_decisions_total",
    "Admission decisions grouped by pipeline stage and outcome",
    labelnames=("stage", "outcome"),
)
STORE_FAILURES = Counter(
    "gatekeeper_store_failures_total",
    "Counter store calls that failed or timed out and were failed open",
    labelnames=("operation",),
)
STORE_LATENCY = Histogram(
    "gatekeeper_store_call_duration_seconds",
    "Round trip time of counter store calls, failures included",
    labelnames=("operation",),
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)

tracer = trace.get_tracer("gatekeeper.admission")

_provider: TracerProvider | None = None


def record_decision(stage: str, outcome: str) -> None:
    ADMISSION_DECISIONS.labels(stage=stage, outcome=outcome).inc()


def setup_prometheus(app: FastAPI) -> None:
    """Serve the process registry on the configured path."""

    path = get_settings().prometheus_metrics_path

    @app.get(path, include_in_schema=False)
    async def prometheus_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_tracing(app: FastAPI) -> None:
    """Export spans over OTLP/HTTP when ``otel_exporter_otlp_endpoint`` is set.

    The provider is global to the process; apps created later (tests build
    several) are instrumented against the same provider.
    """

    global _provider
    settings = get_settings()
    if not settings.otel_exporter_otlp_endpoint:
        return

    if _provider is None:
        _provider = _build_provider(settings)
        trace.set_tracer_provider(_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider)


def _build_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            "service.name": settings.otel_service_name or settings.project_name,
            "service.version": SERVICE_VERSION,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=settings.otel_exporter_otlp_endpoint,
                headers=_parse_headers(settings.otel_exporter_otlp_headers),
            )
        )
    )
    return provider


def _parse_headers(raw: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2``; malformed pairs are skipped."""

    headers: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers
