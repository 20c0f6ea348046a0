"""
Prometheus metrics for the commerce core.

Tracks:
- Order actions by outcome
- Stock reservations and ledger writes
- Payment operations and gateway calls
- Refunds
- Idempotent replays
- Webhook deliveries and dead letters
- Inconsistency errors and reconciliation runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
order_actions_total = Counter(
    "order_actions_total",
    "Total order actions",
    ["action", "outcome"],  # outcome: success, validation, transient, inconsistency, replayed
)

order_action_duration_seconds = Histogram(
    "order_action_duration_seconds",
    "Order action duration in seconds",
    ["action"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

order_amount_minor_units = Histogram(
    "order_amount_minor_units",
    "Order totals in minor currency units",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

# Inventory metrics
stock_reservations_total = Counter(
    "stock_reservations_total",
    "Total stock reservation attempts",
    ["status"],  # reserved, insufficient
)

inventory_adjustments_total = Counter(
    "inventory_adjustments_total",
    "Total inventory ledger rows written",
    ["type"],
)

# Payment metrics
payment_operations_total = Counter(
    "payment_operations_total",
    "Total payment operations",
    ["operation", "status"],
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # status: success, declined, timeout, error
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Total refunds by target and status",
    ["target", "status"],
)

refund_amount_minor_units = Histogram(
    "refund_amount_minor_units",
    "Refund amounts in minor currency units",
    buckets=(100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Idempotency metrics
idempotency_replays_total = Counter(
    "idempotency_replays_total",
    "Total idempotent replays served",
    ["operation", "source"],  # source: redis, database
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total webhook delivery attempts",
    ["event_type", "status"],  # success, failed, dead_lettered, cancelled
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Webhook delivery HTTP duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_dead_letters = Gauge(
    "webhook_dead_letters",
    "Dead-lettered webhook deliveries awaiting manual handling",
)

webhook_deliveries_claimed_total = Counter(
    "webhook_deliveries_claimed_total",
    "Total deliveries claimed by sweeping workers",
)

# Inconsistency / reconciliation metrics
inconsistency_errors_total = Counter(
    "inconsistency_errors_total",
    "Total invariant violations detected",
    ["code"],
)

reconciliation_discrepancies_total = Gauge(
    "reconciliation_discrepancies_total",
    "Discrepancies found by the last reconciliation run",
)

reconciliation_resolved_operations = Gauge(
    "reconciliation_resolved_operations",
    "Pending gateway operations resolved by the last reconciliation run",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_action(action: str, outcome: str, duration_seconds: float) -> None:
        """Record an action call and its outcome."""
        order_actions_total.labels(action=action, outcome=outcome).inc()
        order_action_duration_seconds.labels(action=action).observe(duration_seconds)

    @staticmethod
    def record_order_created(total_amount: int) -> None:
        order_amount_minor_units.observe(total_amount)

    @staticmethod
    def record_reservation(status: str) -> None:
        stock_reservations_total.labels(status=status).inc()

    @staticmethod
    def record_adjustment(adjustment_type: str) -> None:
        inventory_adjustments_total.labels(type=adjustment_type).inc()

    @staticmethod
    def record_payment_operation(operation: str, status: str) -> None:
        payment_operations_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_refund(target: str, status: str, amount: int) -> None:
        refunds_total.labels(target=target, status=status).inc()
        if status == "success":
            refund_amount_minor_units.observe(amount)

    @staticmethod
    def record_idempotent_replay(operation: str, source: str) -> None:
        idempotency_replays_total.labels(operation=operation, source=source).inc()

    @staticmethod
    def record_webhook_delivery(event_type: str, status: str, duration_seconds: float) -> None:
        """Record a webhook delivery attempt."""
        webhook_deliveries_total.labels(event_type=event_type, status=status).inc()
        webhook_delivery_duration_seconds.labels(event_type=event_type).observe(duration_seconds)

    @staticmethod
    def record_webhook_claims(count: int) -> None:
        webhook_deliveries_claimed_total.inc(count)

    @staticmethod
    def set_dead_letter_count(count: int) -> None:
        webhook_dead_letters.set(count)

    @staticmethod
    def record_inconsistency(code: str) -> None:
        inconsistency_errors_total.labels(code=code).inc()

    @staticmethod
    def set_reconciliation_metrics(
        discrepancies_count: int, resolved_operations: int, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_resolved_operations.set(resolved_operations)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
