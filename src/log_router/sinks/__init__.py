"""Reference sinks. Production destinations implement the same ``put(batch)`` contract."""

from .memory import InMemorySink
from .ndjson import NDJSONArchiveSink
from .ordering import TimestampOrderedSink

__all__ = ["InMemorySink", "NDJSONArchiveSink", "TimestampOrderedSink"]
