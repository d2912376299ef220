"""
NGSILink Metrics Module

Provides Prometheus-compatible metrics for the translation pipeline and the
Context Broker exchanges.

Usage:
    from ngsilink.utils.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_measures("Sensor", 3)

    with metrics.time_exchange("update"):
        response = await transport.send(...)
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


class NGSILinkMetrics:
    """Centralized metrics collection for NGSILink."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self._setup_metrics()

    def _setup_metrics(self):
        """Initialize all Prometheus metrics."""

        self.app_info = Info(
            "ngsilink",
            "NGSILink application information",
            registry=self.registry,
        )

        # Translation metrics
        self.measures_received_total = Counter(
            "ngsilink_measures_received_total",
            "Total number of device attributes received for translation",
            ["entity_type"],
            registry=self.registry,
        )

        self.translations_failed_total = Counter(
            "ngsilink_translations_failed_total",
            "Total number of updates that failed before reaching the broker",
            ["error_type"],
            registry=self.registry,
        )

        # Broker exchange metrics
        self.broker_exchanges_total = Counter(
            "ngsilink_broker_exchanges_total",
            "Total Context Broker exchanges",
            ["operation", "outcome"],  # update/query, updated/queried/<error code>
            registry=self.registry,
        )

        self.broker_exchange_seconds = Histogram(
            "ngsilink_broker_exchange_seconds",
            "Context Broker exchange latency",
            ["operation"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )

        # Alarm metrics
        self.alarm_active = Gauge(
            "ngsilink_alarm_active",
            "Whether an alarm is currently raised (1) or released (0)",
            ["alarm"],
            registry=self.registry,
        )

    def set_app_info(self, version: str, environment: str, **extra):
        """Set application info labels."""
        self.app_info.info({"version": version, "environment": environment, **extra})

    def record_measures(self, entity_type: str, count: int):
        if count > 0:
            self.measures_received_total.labels(entity_type=entity_type or "unknown").inc(count)

    def record_translation_failure(self, error_type: str):
        self.translations_failed_total.labels(error_type=error_type).inc()

    def record_exchange(self, operation: str, outcome: str):
        """Record the classified outcome of one broker exchange."""
        self.broker_exchanges_total.labels(operation=operation, outcome=outcome).inc()

    def set_alarm(self, alarm: str, active: bool):
        self.alarm_active.labels(alarm=alarm).set(1 if active else 0)

    @contextmanager
    def time_exchange(self, operation: str):
        """Context manager timing one broker exchange."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.broker_exchange_seconds.labels(operation=operation).observe(
                time.perf_counter() - start
            )

    def get_metrics(self) -> bytes:
        """Generate metrics in Prometheus format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Global metrics instance
metrics = NGSILinkMetrics()


def get_metrics() -> NGSILinkMetrics:
    """Get the global metrics instance."""
    return metrics
