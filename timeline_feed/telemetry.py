"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for feed assembly, fan-out and rate limiting

The API and the fan-out worker both call setup_tracing() once at startup.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from timeline_feed.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "End-to-end latency of a feed page request",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

FEED_PAGES_TOTAL = Counter(
    "feed_pages_total",
    "Feed pages served, by where the ids came from",
    ["source"],  # 'cache' | 'timeline' | 'merged' | 'authoritative'
)

FANOUT_EVENTS_TOTAL = Counter(
    "fanout_events_total",
    "Content events processed by the fan-out consumer",
    ["topic", "outcome"],  # outcome: 'applied' | 'dropped'
)

FANOUT_FOLLOWERS = Histogram(
    "fanout_followers",
    "Follower timelines touched per top-level content event",
    buckets=[0, 1, 10, 100, 1_000, 10_000, 100_000],
)

TIMELINE_ERRORS_TOTAL = Counter(
    "timeline_errors_total",
    "Timeline store operations that failed and were degraded",
    ["operation"],
)

RATE_LIMITED_TOTAL = Counter(
    "rate_limited_total",
    "Requests rejected by the rate governor",
    ["scope"],
)


# ─────────────────────────── Logging ──────────────────────────────────────
def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(service_name: str | None = None) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": service_name or settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Store access shows up as child spans of feed / fan-out spans
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
