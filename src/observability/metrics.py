"""
Prometheus metrics for the alerting engine.

Defines and exposes metrics for:
- Trigger outcomes (fired, suppressed, not found)
- Delivery results per channel
- Provider send latency
- Audit writes

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsCollector:
    """
    Prometheus metrics collector for alert dispatch.

    Usage:
        metrics = get_metrics()
        metrics.record_delivery("email", delivered=True, latency=0.42)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.triggers = Counter(
            "alerting_triggers_total",
            "Alert trigger evaluations by outcome",
            ["alert_code", "outcome"],  # outcome: fired, suppressed, not_found
        )

        self.deliveries = Counter(
            "alerting_deliveries_total",
            "Delivery attempts by channel and status",
            ["channel", "status"],  # status: delivered, failed
        )

        self.delivery_errors = Counter(
            "alerting_delivery_errors_total",
            "Failed deliveries by channel and error type",
            ["channel", "error_type"],
        )

        self.delivery_latency = Histogram(
            "alerting_delivery_latency_seconds",
            "Time spent rendering and sending to one destination",
            ["channel"],
            buckets=LATENCY_BUCKETS,
        )

        self.audit_records = Counter(
            "alerting_audit_records_total",
            "Delivery records written",
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %d", port)

    def record_trigger(self, alert_code: str, outcome: str) -> None:
        """Record the outcome of a trigger_by_code evaluation."""
        self.triggers.labels(alert_code=alert_code, outcome=outcome).inc()

    def record_delivery(
        self,
        channel: str,
        delivered: bool,
        latency: float | None = None,
        error_type: str | None = None,
    ) -> None:
        """
        Record one destination attempt.

        Args:
            channel: Channel name
            delivered: Whether the provider accepted the message
            latency: Optional render+send latency in seconds
            error_type: Exception class name for failures
        """
        status = "delivered" if delivered else "failed"
        self.deliveries.labels(channel=channel, status=status).inc()
        if not delivered:
            self.delivery_errors.labels(
                channel=channel, error_type=error_type or "unknown",
            ).inc()
        if latency is not None:
            self.delivery_latency.labels(channel=channel).observe(latency)
        self.audit_records.inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
