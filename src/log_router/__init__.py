"""
Log Router

Buffered multi-destination router for structured log events: classify by
severity, fan out to per-destination buffers, flush by size/age, deliver to
sinks with bounded retry.

Usage:
    from log_router import SinkRouter, Destination, DestinationConfig, Event

    router = SinkRouter([
        Destination(DestinationConfig(destination_id="alert", severity_threshold="error"), alert_sink),
        Destination(DestinationConfig(destination_id="archive"), archive_sink),
    ])
    async with router:
        await router.submit(Event(timestamp=now, severity="critical", source="order-service",
                                  message="payment declined"))
"""

from .classify import PartitionKeyExtractor, partition_key, route
from .errors import (
    DeliveryFailed,
    LogRouterError,
    MalformedEvent,
    PermanentSinkError,
    RouterClosed,
    SinkError,
    TransientSinkError,
)
from .models import Ack, Batch, BufferedRecord, Event, FlushReason, PartitionKey, RoutingRule, Severity
from .router import (
    DeadLetterQueue,
    Destination,
    FeedbackBus,
    FlushReport,
    RetryManager,
    RetryPolicy,
    ShutdownReport,
    Sink,
    SinkRouter,
)
from .settings import DestinationConfig, RouterSettings, get_settings

__version__ = "0.1.0"
__all__ = [
    "Ack",
    "Batch",
    "BufferedRecord",
    "DeadLetterQueue",
    "DeliveryFailed",
    "Destination",
    "DestinationConfig",
    "Event",
    "FeedbackBus",
    "FlushReason",
    "FlushReport",
    "LogRouterError",
    "MalformedEvent",
    "PartitionKey",
    "PartitionKeyExtractor",
    "PermanentSinkError",
    "RetryManager",
    "RetryPolicy",
    "RouterClosed",
    "RouterSettings",
    "RoutingRule",
    "Severity",
    "ShutdownReport",
    "Sink",
    "SinkError",
    "SinkRouter",
    "TransientSinkError",
    "get_settings",
    "partition_key",
    "route",
]
