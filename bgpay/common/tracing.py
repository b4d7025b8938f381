"""OpenTelemetry wiring: inbound request spans plus manual spans around processor calls."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from bgpay.common.config import settings

tracer = trace.get_tracer("bgpay")


def configure_tracing(app: FastAPI, service_name: str) -> bool:
    """Register an OTLP exporter and instrument `app`; no-op when OTEL_ENABLED is false."""

    if not settings.otel_enabled:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)
    # Health and scrape traffic would drown the interesting spans.
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
    return True


@contextmanager
def dependency_span(dependency: str, operation: str, **attributes):
    """Span for one outbound call; errors are recorded and re-raised."""

    with tracer.start_as_current_span(f"{dependency}.{operation}") as span:
        span.set_attribute("bgpay.dependency", dependency)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"bgpay.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise
