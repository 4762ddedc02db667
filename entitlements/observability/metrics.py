"""
Metrics Collection with Prometheus.

Exposes reconciliation and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from entitlements.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    PROVIDER = "provider"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    STEP = "step"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlements service.

    Covers:
    - HTTP requests (rate, duration)
    - Provider events (rate by provider, type and outcome)
    - Cascade step failures (partial propagation needing reconciliation)
    - Refunds issued through the admin workflow
    """

    def __init__(self, enabled: bool = True) -> None:
        # Collectors are always registered; recording is skipped when disabled
        self.enabled = enabled
        self.service_info = Info("entitlements_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "entitlements_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlements_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "entitlements_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.provider_events_total = Counter(
            "entitlements_provider_events_total",
            "Provider subscription events by outcome",
            [MetricLabels.PROVIDER, MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.cascade_failures_total = Counter(
            "entitlements_cascade_failures_total",
            "Cascade steps that failed and need reconciliation",
            [MetricLabels.STEP],
        )

        # ====================================================================
        # Refund Metrics
        # ====================================================================
        self.refunds_total = Counter(
            "entitlements_refunds_total",
            "Admin refunds by outcome",
            [MetricLabels.OUTCOME],
        )

        self.refund_amount_minor = Histogram(
            "entitlements_refund_amount_minor",
            "Refunded amounts in minor units (cents)",
            buckets=(100, 250, 500, 1000, 2500, 5000, 10000, 25000),
        )

    def track_in_progress(self, endpoint: str, method: str, delta: int) -> None:
        """Adjust the in-flight request gauge."""
        if not self.enabled:
            return
        self.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc(delta)

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        if not self.enabled:
            return
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_provider_event(self, provider: str, event_type: str | None, outcome: str) -> None:
        """Record one inbound provider event and what happened to it."""
        if not self.enabled:
            return
        self.provider_events_total.labels(
            provider=provider, event_type=event_type or "unknown", outcome=outcome
        ).inc()

    def record_cascade_failure(self, step: str) -> None:
        if not self.enabled:
            return
        self.cascade_failures_total.labels(step=step).inc()

    def record_refund(self, outcome: str, amount_minor: int | None = None) -> None:
        if not self.enabled:
            return
        self.refunds_total.labels(outcome=outcome).inc()
        if amount_minor is not None:
            self.refund_amount_minor.observe(amount_minor)


# Global metrics instance
metrics = EntitlementMetrics(enabled=settings.metrics_enabled)
