"""OpenTelemetry wiring; everything here is a no-op with TRACING_ENABLED=false."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from gasmarket.common.config import settings

# Probe and scrape traffic would drown out real request spans.
UNTRACED_URLS = "health,metrics"

tracer = trace.get_tracer("gasmarket")


def setup_tracing(app: FastAPI) -> None:
    """Register the OTLP exporter and instrument `app`'s routes."""

    if not settings.tracing_enabled:
        return
    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.service_name, "deployment.environment": settings.environment}
        )
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)
