"""OpenTelemetry setup helpers used by the traversal driver."""

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from statecheck.common.config import settings


def setup_tracing(service_name: str) -> bool:
    """Register a tracer provider with OTLP HTTP exporter when an endpoint is set."""

    if not settings.otel_exporter_otlp_endpoint:
        return False
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return True


def get_tracer() -> trace.Tracer:
    return trace.get_tracer("statecheck")
