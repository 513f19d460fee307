"""Prometheus metrics for monitoring."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Info, generate_latest, start_http_server

from changewatch.observability.logging import get_logger

logger = get_logger(__name__)

# Create a custom registry
REGISTRY = CollectorRegistry()


APP_INFO = Info(
    "changewatch",
    "changewatch application info",
    registry=REGISTRY,
)

CHANGE_EVENTS_TOTAL = Counter(
    "changewatch_change_events_total",
    "Total change events delivered",
    ["namespace", "operation"],
    registry=REGISTRY,
)

CURSOR_OPENS_TOTAL = Counter(
    "changewatch_cursor_opens_total",
    "Change stream aggregates issued",
    ["namespace", "reason"],
    registry=REGISTRY,
)

STREAM_ERRORS_TOTAL = Counter(
    "changewatch_stream_errors_total",
    "Errors raised while pulling changes",
    ["namespace", "resumable"],
    registry=REGISTRY,
)


class MetricsCollector:
    """
    Collects and exposes change stream metrics.

    Provides methods to update metrics and generate output.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._server_port: int | None = None

    def initialize(self, version: str) -> None:
        """Initialize metrics with app info."""
        if self._initialized:
            return

        APP_INFO.info({
            "version": version,
            "name": "changewatch",
        })
        self._initialized = True

    def record_change_event(self, namespace: str, operation: str) -> None:
        """Record a change handed to the caller."""
        CHANGE_EVENTS_TOTAL.labels(namespace=namespace, operation=operation).inc()

    def record_cursor_open(self, namespace: str, resumed: bool) -> None:
        """Record an aggregate issued for a stream."""
        reason = "resume" if resumed else "initial"
        CURSOR_OPENS_TOTAL.labels(namespace=namespace, reason=reason).inc()

    def record_stream_error(self, namespace: str, resumable: bool) -> None:
        """Record a failed pull."""
        STREAM_ERRORS_TOTAL.labels(
            namespace=namespace, resumable=str(resumable).lower()
        ).inc()

    def start_server(self, port: int) -> None:
        """Serve the registry over HTTP on ``port``."""
        if self._server_port is not None:
            return
        start_http_server(port, registry=REGISTRY)
        self._server_port = port
        logger.info("Metrics server started", port=port)

    def get_metrics(self) -> bytes:
        """Generate metrics in Prometheus format."""
        return generate_latest(REGISTRY)


# Global metrics collector instance
_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
