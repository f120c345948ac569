"""
Prometheus metrics for the order fulfillment saga.

Tracks:
- Inventory ledger operations by outcome
- Order creation counts and duration
- Webhook events by type and outcome
- Event log publish/consume/dead-letter counts
- Calls to sibling services and the payment provider
- Stale reservations released by the reconciler
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Inventory metrics
inventory_operations_total = Counter(
    "inventory_operations_total",
    "Total inventory ledger item operations",
    ["operation", "outcome"],  # operation: reserve, release, deduct
)

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total order creation attempts",
    ["outcome"],  # created, invalid_products, insufficient_stock, failed
)

order_creation_duration_seconds = Histogram(
    "order_creation_duration_seconds",
    "Order creation saga duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
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
    ["event_type", "status"],  # processed, already_processed, ignored, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Event log metrics
events_published_total = Counter(
    "events_published_total",
    "Total domain events appended to the event log",
    ["topic", "status"],  # ok, failed
)

events_consumed_total = Counter(
    "events_consumed_total",
    "Total event log entries handled by consumers",
    ["topic", "status"],  # acked, failed
)

events_dead_lettered_total = Counter(
    "events_dead_lettered_total",
    "Total event log entries moved to a dead-letter stream",
    ["topic", "reason"],  # max_deliveries, malformed
)

# Dependency metrics
dependency_requests_total = Counter(
    "dependency_requests_total",
    "Total calls to sibling services and providers",
    ["target", "outcome"],
)

dependency_duration_seconds = Histogram(
    "dependency_duration_seconds",
    "Dependency call duration in seconds",
    ["target"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reservations_reconciled_total = Counter(
    "reservations_reconciled_total",
    "Total stale reservations handled by the reconciler",
    ["outcome"],  # released, failed
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_inventory_operation(operation: str, outcome: str, count: int = 1) -> None:
        """Record inventory item operations."""
        inventory_operations_total.labels(operation=operation, outcome=outcome).inc(count)

    @staticmethod
    def record_order_created(outcome: str, duration_seconds: float) -> None:
        """Record an order creation attempt."""
        orders_created_total.labels(outcome=outcome).inc()
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_event_published(topic: str, status: str) -> None:
        events_published_total.labels(topic=topic, status=status).inc()

    @staticmethod
    def record_event_consumed(topic: str, status: str) -> None:
        events_consumed_total.labels(topic=topic, status=status).inc()

    @staticmethod
    def record_event_dead_lettered(topic: str, reason: str) -> None:
        events_dead_lettered_total.labels(topic=topic, reason=reason).inc()

    @staticmethod
    def record_dependency_call(target: str, outcome: str, duration_seconds: float) -> None:
        """Record a call to a sibling service or provider."""
        dependency_requests_total.labels(target=target, outcome=outcome).inc()
        dependency_duration_seconds.labels(target=target).observe(duration_seconds)

    @staticmethod
    def record_reconciliation(released: int, failed: int) -> None:
        """Record a reconciler run."""
        reservations_reconciled_total.labels(outcome="released").inc(released)
        reservations_reconciled_total.labels(outcome="failed").inc(failed)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
