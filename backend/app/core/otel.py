"""OpenTelemetry tracing for the billing API

Tracing is optional: without OTEL_EXPORTER_OTLP_ENDPOINT the global no-op
provider stays in place and ``get_tracer`` spans cost nothing.
"""
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import settings

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Probes and scrapes would drown the billing spans
EXCLUDED_URLS = "health,metrics"


def initialize_otel() -> bool:
    """Install the OTLP trace provider when an exporter endpoint is configured"""
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        provider = TracerProvider(resource=Resource.create({
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": settings.OTEL_ENVIRONMENT,
        }))
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=not endpoint.startswith("https://"))
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def get_tracer():
    """Tracer for billing spans (plan changes, webhook handling)"""
    return trace.get_tracer("billing", SERVICE_VERSION)


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine):
    """Trace queries; failures only cost visibility"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
