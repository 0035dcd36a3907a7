"""OpenTelemetry setup for the webhook app and the pipeline stage spans."""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

TRACER_NAME = "salon_rewards_api"

# Probes are polled every few seconds and would drown out webhook traces.
UNTRACED_PATHS = "healthz,readyz"

_provider: TracerProvider | None = None


def parse_otlp_headers(raw: str | None) -> Dict[str, str] | None:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""

    if not raw:
        return None
    pairs = (item.partition("=") for item in raw.split(","))
    headers = {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}
    return headers or None


def _exporter(endpoint: str | None, headers: str | None) -> SpanExporter:
    if not endpoint:
        return ConsoleSpanExporter()
    return OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
    otlp_endpoint: str | None = None,
    otlp_headers: str | None = None,
) -> None:
    """Install the tracer provider once per process and instrument ``app``."""

    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    ResourceAttributes.SERVICE_NAME: service_name,
                    ResourceAttributes.SERVICE_VERSION: service_version,
                    ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
                }
            )
        )
        _provider.add_span_processor(BatchSpanProcessor(_exporter(otlp_endpoint, otlp_headers)))
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider, excluded_urls=UNTRACED_PATHS)


def get_tracer() -> trace.Tracer:
    """No-op until ``configure_tracing`` has run."""

    return trace.get_tracer(TRACER_NAME)


__all__ = ["configure_tracing", "get_tracer", "parse_otlp_headers"]
