"""
OpenTelemetry tracing setup.
"""
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_tracing(app, settings) -> bool:
    if not settings.enable_tracing:
        return False
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: "tenantcore"}))
    processor = BatchSpanProcessor(
        OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=True)
    )
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    return True
