"""
Prometheus metrics for payment engine monitoring.

Tracks:
- Gateway calls by operation and outcome
- Retry attempts per executed operation
- Classified gateway errors
- Webhook events and rejected state transitions
- Refunds
- Reconciliation runs and discrepancies
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # status: success, failure
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total classified payment gateway errors",
    ["error_type", "retryable"],
)

# Retry metrics
retry_attempts = Histogram(
    "payment_retry_attempts",
    "Attempts used per retried operation",
    ["outcome"],  # success, failure
    buckets=(1, 2, 3, 4, 5, 7, 10),
)

# Booking payment metrics
booking_payments_created_total = Counter(
    "booking_payments_created_total",
    "Booking payments created",
    ["payment_type", "status"],
)

booking_payment_amount_minor = Histogram(
    "booking_payment_amount_minor",
    "Booking payment amounts in minor currency units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Refund requests",
    ["outcome"],  # succeeded, failed, rejected
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # handled, ignored, duplicate, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for an invalid signature",
)

illegal_transitions_total = Counter(
    "payment_illegal_transitions_total",
    "Rejected payment status transitions",
    ["from_status", "to_status"],
)

# Reconciliation metrics
reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Reconciliation runs",
    ["status"],  # completed, failed
)

reconciliation_discrepancies = Gauge(
    "reconciliation_discrepancies",
    "Discrepancies found by the last reconciliation run",
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str, retryable: bool) -> None:
        """Record a classified gateway error."""
        gateway_errors_total.labels(error_type=error_type, retryable=str(retryable).lower()).inc()

    @staticmethod
    def record_retry_outcome(success: bool, attempts: int) -> None:
        """Record how many attempts an executed operation needed."""
        retry_attempts.labels(outcome="success" if success else "failure").observe(attempts)

    @staticmethod
    def record_booking_payment(payment_type: str, status: str, amount: int) -> None:
        """Record a booking payment creation."""
        booking_payments_created_total.labels(payment_type=payment_type, status=status).inc()
        booking_payment_amount_minor.observe(amount)

    @staticmethod
    def record_refund(outcome: str) -> None:
        """Record a refund outcome."""
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        """Record a webhook signature verification failure."""
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_illegal_transition(from_status: str, to_status: str) -> None:
        """Record a rejected status transition."""
        illegal_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def set_reconciliation_metrics(status: str, discrepancies_count: int = 0) -> None:
        """Set reconciliation metrics."""
        reconciliation_runs_total.labels(status=status).inc()
        reconciliation_discrepancies.set(discrepancies_count)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
