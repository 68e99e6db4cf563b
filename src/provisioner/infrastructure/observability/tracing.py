"""OpenTelemetry tracing configuration."""

from __future__ import annotations

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
)
from opentelemetry.semconv.resource import ResourceAttributes

from provisioner.config import Environment, Settings


def setup_tracing(settings: Settings) -> None:
    """Configure OpenTelemetry tracing."""
    obs = settings.observability
    if not obs.tracing_enabled:
        return

    resource = Resource.create({
        ResourceAttributes.SERVICE_NAME: obs.service_name,
        ResourceAttributes.SERVICE_VERSION: "1.0.0",
    })

    provider = TracerProvider(resource=resource)

    if settings.environment is Environment.DEVELOPMENT:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    else:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=obs.otlp_endpoint))
        )

    trace.set_tracer_provider(provider)
