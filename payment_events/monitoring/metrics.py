"""
Prometheus metrics for webhook processing.

Tracks:
- Webhook events by type and outcome
- Webhook processing duration
- Rejections (bad signature, malformed payload)
- Idempotency ledger admissions
- Order status transitions
- Reconciliation anomalies
- Rewards recorded
- Notification deliveries
- Stuck ledger entries
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, duplicate, in_flight, escalated, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhook requests rejected before processing",
    ["reason"],  # invalid_signature, malformed_payload
)

# Ledger metrics
ledger_admissions_total = Counter(
    "ledger_admissions_total",
    "Idempotency ledger admission decisions",
    ["result", "source"],  # result: admitted, already_processed, in_flight
)

ledger_stuck_events = Gauge(
    "ledger_stuck_events",
    "Ledger entries pending past the stale threshold or failed",
)

ledger_monitor_last_run_timestamp = Gauge(
    "ledger_monitor_last_run_timestamp",
    "Timestamp of last ledger monitor run",
)

# Reconciliation metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions performed",
    ["from_status", "to_status"],
)

subscription_updates_total = Counter(
    "subscription_updates_total",
    "Subscription mutations by resulting status",
    ["status"],
)

reconciliation_anomalies_total = Counter(
    "reconciliation_anomalies_total",
    "Anomalies written to the payment audit log",
    ["reason", "severity"],
)

# Rewards metrics
commissions_total = Counter(
    "commissions_total",
    "Affiliate commission attempts",
    ["result"],  # created, duplicate, skipped, canceled
)

points_entries_total = Counter(
    "points_entries_total",
    "Loyalty points ledger entries",
    ["reason", "result"],  # result: created, duplicate, skipped
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Notification dispatch outcomes",
    ["template", "status"],  # sent, failed, timeout
)

notification_duration_seconds = Histogram(
    "notification_duration_seconds",
    "Notification dispatch duration in seconds",
    ["template"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_rejection(reason: str) -> None:
        """Record a request rejected before ledger admission."""
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_ledger_admission(result: str, source: str = "database") -> None:
        """Record an idempotency ledger decision."""
        ledger_admissions_total.labels(result=result, source=source).inc()

    @staticmethod
    def set_ledger_stuck_events(count: int) -> None:
        """Set the number of stuck ledger entries."""
        ledger_stuck_events.set(count)
        ledger_monitor_last_run_timestamp.set(time.time())

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        """Record an order status transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_subscription_update(status: str) -> None:
        """Record a subscription mutation."""
        subscription_updates_total.labels(status=status).inc()

    @staticmethod
    def record_anomaly(reason: str, severity: str) -> None:
        """Record an audit log anomaly."""
        reconciliation_anomalies_total.labels(reason=reason, severity=severity).inc()

    @staticmethod
    def record_commission(result: str) -> None:
        """Record an affiliate commission attempt."""
        commissions_total.labels(result=result).inc()

    @staticmethod
    def record_points_entry(reason: str, result: str) -> None:
        """Record a points ledger attempt."""
        points_entries_total.labels(reason=reason, result=result).inc()

    @staticmethod
    def record_notification(template: str, status: str, duration_seconds: float) -> None:
        """Record a notification dispatch."""
        notifications_total.labels(template=template, status=status).inc()
        notification_duration_seconds.labels(template=template).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
