"""
Prometheus metrics for the log router.

Registered in the global REGISTRY on import.
"""

from prometheus_client import Counter, Gauge, Histogram

EVENTS_SUBMITTED_TOTAL = Counter(
    "log_router_events_submitted_total",
    "Events appended to a destination buffer",
    ["destination"],
)

EVENTS_DROPPED_TOTAL = Counter(
    "log_router_events_dropped_total",
    "Events discarded by the backpressure policy",
    ["destination", "policy"],
)

EVENTS_REJECTED_TOTAL = Counter(
    "log_router_events_rejected_total",
    "Events rejected as malformed",
)

BATCHES_FLUSHED_TOTAL = Counter(
    "log_router_batches_flushed_total",
    "Batches drained from a buffer",
    ["destination", "reason"],
)

DELIVERY_ATTEMPTS_TOTAL = Counter(
    "log_router_delivery_attempts_total",
    "Sink put() attempts",
    ["destination", "outcome"],  # success | transient | permanent
)

DELIVERY_FAILURES_TOTAL = Counter(
    "log_router_delivery_failures_total",
    "Batches that failed terminally",
    ["destination", "kind"],  # permanent | exhausted | abandoned
)

PENDING_EVENTS = Gauge(
    "log_router_pending_events",
    "Buffered plus in-flight (undelivered) events",
    ["destination"],
)

DELIVERY_LATENCY = Histogram(
    "log_router_delivery_latency_seconds",
    "Time from handoff to terminal outcome, including retries",
    ["destination"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)


class MetricsRegistry:
    """Centralized access to router metrics."""

    events_submitted_total = EVENTS_SUBMITTED_TOTAL
    events_dropped_total = EVENTS_DROPPED_TOTAL
    events_rejected_total = EVENTS_REJECTED_TOTAL
    batches_flushed_total = BATCHES_FLUSHED_TOTAL
    delivery_attempts_total = DELIVERY_ATTEMPTS_TOTAL
    delivery_failures_total = DELIVERY_FAILURES_TOTAL
    pending_events = PENDING_EVENTS
    delivery_latency = DELIVERY_LATENCY


metrics_registry = MetricsRegistry()
