"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest
import structlog

from .config import settings

SERVICE_NAME = "rental-sync"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business metrics
WEBHOOK_EVENTS = Counter(
    'webhook_events_total',
    'Inbound provider events by type and outcome',
    ['event_type', 'outcome'],
    registry=REGISTRY
)

LEDGER_TRANSITIONS = Counter(
    'ledger_transitions_total',
    'Applied booking ledger transitions',
    ['event_type', 'status', 'payment_status'],
    registry=REGISTRY
)

STALE_VERSION_RETRIES = Counter(
    'ledger_stale_version_retries_total',
    'Optimistic concurrency conflicts retried by callers',
    ['caller'],
    registry=REGISTRY
)

SWEEP_SESSIONS = Counter(
    'stale_checkout_sessions_total',
    'Checkout sessions examined by the stale checkout sweep',
    ['result'],
    registry=REGISTRY
)

BOOKING_COMPLETIONS = Counter(
    'booking_completions_total',
    'Lifecycle completion attempts by reason',
    ['reason'],
    registry=REGISTRY
)

REFUND_REQUESTS = Counter(
    'refund_requests_total',
    'Refund requests by dispatch result',
    ['result'],
    registry=REGISTRY
)

DEPOSIT_CASES = Counter(
    'deposit_cases_total',
    'Deposit case transitions',
    ['source', 'status'],
    registry=REGISTRY
)

DEPOSIT_RELEASES = Counter(
    'deposit_releases_total',
    'Deposit release attempts by reason',
    ['reason'],
    registry=REGISTRY
)

HOST_PAYOUTS = Counter(
    'host_payouts_total',
    'Host payout transfers and reversals by result',
    ['result'],
    registry=REGISTRY
)

WORKER_ITERATIONS = Counter(
    'worker_iterations_total',
    'Background worker iterations by outcome',
    ['worker', 'outcome'],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource(app_name: str) -> Resource:
    return Resource.create({
        "service.name": app_name,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_resource(app_name))

    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    trace.set_tracer_provider(provider)
    return trace.get_tracer(__name__)


def setup_metrics(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(app_name), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine=None):
    """Instrument SQLAlchemy with OpenTelemetry."""
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    else:
        SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_webhook(event_type: str, outcome: str):
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_transition(event_type: str, status: str, payment_status: str):
        LEDGER_TRANSITIONS.labels(
            event_type=event_type, status=status, payment_status=payment_status
        ).inc()

    @staticmethod
    def record_stale_version_retry(caller: str):
        STALE_VERSION_RETRIES.labels(caller=caller).inc()

    @staticmethod
    def record_sweep_result(result: str):
        SWEEP_SESSIONS.labels(result=result).inc()

    @staticmethod
    def record_completion(reason: str):
        BOOKING_COMPLETIONS.labels(reason=reason).inc()

    @staticmethod
    def record_refund(result: str):
        REFUND_REQUESTS.labels(result=result).inc()

    @staticmethod
    def record_deposit_case(source: str, status: str):
        DEPOSIT_CASES.labels(source=source, status=status).inc()

    @staticmethod
    def record_deposit_release(reason: str):
        DEPOSIT_RELEASES.labels(reason=reason).inc()

    @staticmethod
    def record_payout(result: str):
        HOST_PAYOUTS.labels(result=result).inc()

    @staticmethod
    def record_worker_iteration(worker: str, outcome: str):
        WORKER_ITERATIONS.labels(worker=worker, outcome=outcome).inc()


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


class StructuredLogger:
    """Structured logger with business context."""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
