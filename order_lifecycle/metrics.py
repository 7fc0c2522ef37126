"""
Prometheus metrics: transitions (API + webhooks), sweeper outcomes, audit queries.
"""
from prometheus_client import Counter, Gauge, Histogram, generate_latest

# State machine: outcomes by audit action
transitions_applied_total = Counter(
    "order_transitions_applied_total",
    "Total transitions committed (status change and/or audit event written)",
    ["action"],
)
transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected (illegal, unknown order, busy)",
    ["reason", "action"],
)
transitions_duplicate_total = Counter(
    "order_transitions_duplicate_total",
    "Total transition requests recognised as already applied (idempotent no-op)",
    ["action"],
)

# Webhook receiver
webhooks_received_total = Counter(
    "payment_webhooks_received_total",
    "Total payment gateway notifications received",
    ["outcome"],
)

# Sweeper
sweeper_orders_total = Counter(
    "sweeper_orders_total",
    "Auto-cancel attempts by outcome (canceled, skipped, busy)",
    ["outcome"],
)
sweeper_candidates = Gauge(
    "sweeper_candidates",
    "Stale pending orders found by the most recent sweep",
)
sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Wall time of one sweep cycle",
)

# Audit queries
audit_queries_total = Counter(
    "audit_queries_total",
    "Audit queries served",
    ["kind"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
