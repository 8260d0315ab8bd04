"""
Prometheus metrics: order transitions applied/rejected, write conflicts, notification failures,
payments booked.
"""
from prometheus_client import Counter, generate_latest

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions committed",
    ["from_status", "to_status", "forced"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order status transitions rejected by validation",
    ["reason"],
)
order_conflicts_total = Counter(
    "order_conflicts_total",
    "Total writes that lost an optimistic version check",
)
order_notifications_failed_total = Counter(
    "order_notifications_failed_total",
    "Total customer notifications that could not be queued",
)
order_payments_recorded_total = Counter(
    "order_payments_recorded_total",
    "Total payments booked into the ledger",
    ["method"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
