"""OpenTelemetry export and ledger spans.

Nothing is exported unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set. Without a
configured provider the API hands out no-op tracers, so ``ledger_span`` can wrap
every money movement unconditionally.
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ledger.core.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "ledger"
ATTRIBUTE_PREFIX = "ledger."


def otel_enabled() -> bool:
    return bool(settings.OTEL_EXPORTER_OTLP_ENDPOINT)


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
    })


def _exporter_options():
    return {"endpoint": settings.OTEL_EXPORTER_OTLP_ENDPOINT, "insecure": True}


def initialize_otel() -> bool:
    """Install trace, metric and log providers exporting over OTLP/gRPC.

    Returns False when no endpoint is configured or the exporters could not be
    built; the service then runs with no-op providers.
    """
    if not otel_enabled():
        return False

    resource = _resource()
    try:
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options())))
        trace.set_tracer_provider(tracer_provider)

        reader = PeriodicExportingMetricReader(OTLPMetricExporter(**_exporter_options()), export_interval_millis=5000)
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False

    try:
        logger_provider = LoggerProvider(resource=resource)
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_options())))
        set_logger_provider(logger_provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
    except Exception as e:
        # Traces and metrics still export
        logger.warning(f"Failed to ship logs over OTLP: {e}")

    logger.info(f"OpenTelemetry exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    return True


def instrument_app(app, engine) -> None:
    """Trace HTTP requests and SQL statements"""
    FastAPIInstrumentor.instrument_app(app)
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def tag(span: trace.Span, **attributes: Any) -> None:
    """Set ``ledger.*`` attributes on a span, skipping None values"""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(ATTRIBUTE_PREFIX + key, value)


@contextmanager
def ledger_span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    """Span around one ledger operation.

    Exceptions raised inside are recorded on the span and re-raised.

    >>> with ledger_span("ledger.refund", transaction_id=42) as span:
    ...     tag(span, refund_ref="re_123")
    """
    with get_tracer().start_as_current_span(name) as span:
        tag(span, **attributes)
        yield span
