"""
Metrics Collection with Prometheus.

Exposes payment, ledger and webhook metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from paysync.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    TRANSACTION_TYPE = "transaction_type"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class PaymentMetrics:
    """
    Centralized metrics for the payment core.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Idempotency guard outcomes
    - Balance ledger credits and debits
    - Webhook events and subscription reconciles
    - Payment provider call latency
    - Errors
    """

    def __init__(self) -> None:
        self.service_info = Info(
            "paysync_service",
            "Service information",
        )
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
            "paysync_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "paysync_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "paysync_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Idempotency Metrics
        # ====================================================================
        self.idempotency_checks_total = Counter(
            "paysync_idempotency_checks_total",
            "Idempotency guard checks by outcome (new, replay, in_flight, reclaimed)",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.idempotency_records_deleted_total = Counter(
            "paysync_idempotency_records_deleted_total",
            "Idempotency records removed by the retention sweep",
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_mutations_total = Counter(
            "paysync_ledger_mutations_total",
            "Balance ledger mutations",
            [MetricLabels.TRANSACTION_TYPE, MetricLabels.OUTCOME],
        )

        self.ledger_amount = Histogram(
            "paysync_ledger_amount",
            "Credit amounts applied to balances",
            [MetricLabels.TRANSACTION_TYPE],
            buckets=(1, 5, 10, 50, 100, 500, 1000, 5000, 10000, 50000),
        )

        # ====================================================================
        # Webhook / Subscription Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "paysync_webhook_events_total",
            "Webhook events received by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.subscription_reconciles_total = Counter(
            "paysync_subscription_reconciles_total",
            "Subscription upserts by resulting status",
            ["status"],
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_call_duration_seconds = Histogram(
            "paysync_provider_call_duration_seconds",
            "Payment provider call duration in seconds",
            [MetricLabels.OPERATION, "success"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "paysync_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_idempotency_check(self, operation: str, outcome: str) -> None:
        self.idempotency_checks_total.labels(operation=operation, outcome=outcome).inc()

    def record_idempotency_cleanup(self, deleted: int) -> None:
        self.idempotency_records_deleted_total.inc(deleted)

    def record_ledger_mutation(self, transaction_type: str, outcome: str, amount: int) -> None:
        """Record a credit or debit attempt; amount is observed only when applied."""
        self.ledger_mutations_total.labels(
            transaction_type=transaction_type, outcome=outcome
        ).inc()
        if outcome == "applied":
            self.ledger_amount.labels(transaction_type=transaction_type).observe(amount)

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_subscription_reconcile(self, status: str) -> None:
        self.subscription_reconciles_total.labels(status=status).inc()

    def record_provider_call(self, operation: str, success: bool, duration: float) -> None:
        self.provider_call_duration_seconds.labels(
            operation=operation, success=str(success)
        ).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PaymentMetrics()


class track_provider_call:
    """
    Context manager timing a payment provider call.

    Usage:
        with track_provider_call("retrieve_payment_intent"):
            intent = await provider.retrieve_payment_intent(ref)
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.start_time: float = 0.0

    def __enter__(self) -> "track_provider_call":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        metrics.record_provider_call(self.operation, exc_type is None, duration)
