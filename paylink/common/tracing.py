"""OpenTelemetry setup and the spans shared across the service."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


tracer = trace.get_tracer("paylink")


def setup_tracing(service_name: str, endpoint: str | None) -> None:
    """Register a tracer provider; spans are exported only when an OTLP endpoint is set."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


@contextmanager
def provider_span(provider: str, operation: str):
    with tracer.start_as_current_span(
        f"provider.{operation}",
        kind=trace.SpanKind.CLIENT,
        attributes={"paylink.provider": provider, "paylink.operation": operation},
    ) as span:
        yield span


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app)
