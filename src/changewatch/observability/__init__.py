"""Observability module: structured logging and metrics."""

from changewatch.observability.logging import configure_logging, get_logger
from changewatch.observability.metrics import get_metrics_collector

__all__ = ["configure_logging", "get_logger", "get_metrics_collector"]
