"""
OpenTelemetry tracing configuration
"""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from record_flags.core.config import get_settings
from record_flags.core.logging_config import LoggingConfig

logger = LoggingConfig.get_logger(__name__)

# Global tracer provider
_tracer_provider: Optional[TracerProvider] = None
_configured = False


def configure_tracing():
    """
    Configure the OpenTelemetry tracer provider and span exporter
    """
    global _tracer_provider, _configured

    if _configured:
        return

    settings = get_settings()

    if not settings.enable_tracing or settings.tracing_exporter == "none":
        logger.info("OpenTelemetry tracing is disabled via configuration")
        return

    logger.info("Configuring OpenTelemetry tracing...")

    resource = Resource.create({
        "service.name": settings.tracing_service_name,
        "service.version": "0.1.0",
        "service.environment": settings.app_env,
    })

    _tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_tracer_provider)

    if settings.tracing_exporter == "otlp" and settings.tracing_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.tracing_otlp_endpoint)
        logger.info(f"Using OTLP exporter: {settings.tracing_otlp_endpoint}")
    else:
        if settings.tracing_exporter == "otlp":
            logger.warning("OTLP exporter selected but no endpoint configured, falling back to console")
        exporter = ConsoleSpanExporter()

    _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    _configured = True
    logger.info("OpenTelemetry tracing configured successfully")


def instrument_app(app):
    """
    Enable FastAPI auto-instrumentation

    Must run before the application starts serving, since it adds middleware.
    """
    if not get_settings().enable_tracing:
        return
    FastAPIInstrumentor.instrument_app(app)
    logger.debug("FastAPI instrumentation enabled")


def get_tracer(name: str):
    """
    Get a tracer instance

    Without configure_tracing() this is the API's no-op tracer, so spans cost
    nothing in tests and embedded use.
    """
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """Get current trace ID from context, or None if not in a trace"""
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, '032x')
    return None


def add_span_attributes(span=None, **kwargs):
    """
    Add attributes to current span or provided span

    Args:
        span: Optional span object (if None, uses current span)
        **kwargs: Attributes to add; None values are skipped
    """
    if span is None:
        span = trace.get_current_span()

    if span is None or not span.get_span_context().is_valid:
        return

    for key, value in kwargs.items():
        if value is not None:
            span.set_attribute(key, value)


def shutdown_tracing():
    """
    Shutdown OpenTelemetry tracing

    Flushes pending spans; called from the application lifespan.
    """
    global _tracer_provider, _configured

    if not _configured or _tracer_provider is None:
        return

    try:
        logger.info("Shutting down OpenTelemetry tracing...")
        _tracer_provider.force_flush(timeout_millis=5000)
        _tracer_provider.shutdown()
    except Exception as e:
        logger.warning(f"Error during tracing shutdown: {e}")
    finally:
        _tracer_provider = None
        _configured = False
