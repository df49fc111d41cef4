"""Sink router

Core submit→buffer→batch→retry→sink pipeline with:
- EventBuffer per destination (size/byte triggers, backpressure policies)
- FlushScheduler for the time trigger
- RetryPolicy + RetryManager with transient/permanent classification
- SinkRouter orchestration, flush_all/shutdown reports & health
- FeedbackBus for backpressure signals
- Dead Letter Queue (file-based NDJSON)
"""

from .types import Sink, FailureCallback, DropCallback
from .policy import RetryPolicy, default_retry_classifier
from .buffer import EventBuffer, BufferState, AppendResult
from .scheduler import FlushScheduler
from .retry import RetryManager
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent, Watermarks
from .sink_router import (
    Destination,
    DestinationHealth,
    FlushReport,
    RouterHealth,
    ShutdownReport,
    SinkRouter,
)
from .dlq import DeadLetterQueue, DLQRecord

__all__ = [
    # types
    "Sink",
    "FailureCallback",
    "DropCallback",
    "AppendResult",
    "BufferState",
    "Destination",
    "DestinationHealth",
    "FlushReport",
    "RouterHealth",
    "ShutdownReport",
    "DLQRecord",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    # runtime
    "EventBuffer",
    "FlushScheduler",
    "RetryManager",
    "SinkRouter",
    # feedback
    "BackpressureLevel",
    "FeedbackBus",
    "FeedbackEvent",
    "Watermarks",
    # tooling
    "DeadLetterQueue",
]
