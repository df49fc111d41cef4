"""
Data models for the log router.

Events are validated pydantic models; everything derived from them inside the
router (partition keys, buffered records, batches, acks) is a frozen dataclass.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def generate_id() -> str:
    """Generate a UUID string for event/batch identification."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Severity(IntEnum):
    """Totally ordered event severity (values match stdlib logging levels)."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Coerce a Severity, an int level or a level name into a Severity."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            name = value.strip().upper()
            name = _SEVERITY_ALIASES.get(name, name)
            try:
                return cls[name]
            except KeyError:
                pass
        raise ValueError(f"Unknown severity: {value!r}")


_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL", "ERR": "ERROR"}


class Event(BaseModel):
    """Normalized log record. Immutable once created."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    timestamp: datetime
    severity: Severity
    source: str = ""
    message: str = ""
    attributes: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    raw_exception: Optional[str] = None
    event_id: str = Field(default_factory=generate_id)

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v):
        if v is None:
            raise ValueError("severity is required")
        return Severity.parse(v)

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        # naive timestamps are taken to be UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("attributes", mode="before")
    @classmethod
    def _stringify_attributes(cls, v):
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise ValueError(f"attributes must be a mapping, got {type(v).__name__}")
        return {str(k): str(val) for k, val in v.items()}

    @field_validator("attributes")
    @classmethod
    def _freeze_attributes(cls, v):
        return MappingProxyType(dict(v))


@dataclass(frozen=True)
class PartitionKey:
    """Destination addressing derived from an event's source and timestamp."""

    app: str
    year: int
    month: int
    day: int
    hour: Optional[int] = None

    @property
    def date(self) -> tuple[int, ...]:
        if self.hour is None:
            return (self.year, self.month, self.day)
        return (self.year, self.month, self.day, self.hour)

    @property
    def path(self) -> str:
        """Slash-separated prefix, e.g. ``order-service/2024/05/01``."""
        parts = [self.app, f"{self.year:04d}", f"{self.month:02d}", f"{self.day:02d}"]
        if self.hour is not None:
            parts.append(f"{self.hour:02d}")
        return "/".join(parts)


@dataclass(frozen=True)
class RoutingRule:
    """Send events at or above ``threshold`` to ``destination_id``.

    A threshold of ``None`` matches every event.
    """

    destination_id: str
    threshold: Optional[Severity] = None

    def matches(self, severity: Severity) -> bool:
        return self.threshold is None or severity >= self.threshold

    @classmethod
    def parse(cls, destination_id: str, threshold: Any) -> "RoutingRule":
        if threshold is None or (isinstance(threshold, str) and threshold.lower() == "always"):
            return cls(destination_id, None)
        return cls(destination_id, Severity.parse(threshold))


class FlushReason(str, Enum):
    """Why a buffer was drained."""

    SIZE = "size"
    TIME = "time"
    MANUAL = "manual"


@dataclass(frozen=True)
class BufferedRecord:
    """An event tagged for one destination."""

    event: Event
    key: PartitionKey
    size_bytes: int


@dataclass(frozen=True)
class Batch:
    """Immutable snapshot of a buffer's contents at flush time."""

    destination_id: str
    records: tuple[BufferedRecord, ...]
    reason: FlushReason
    sequence: int = 0
    batch_id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def events(self) -> tuple[Event, ...]:
        return tuple(r.event for r in self.records)

    @property
    def size_bytes(self) -> int:
        return sum(r.size_bytes for r in self.records)

    def by_partition(self) -> dict[PartitionKey, list[BufferedRecord]]:
        """Group records by partition key, keeping append order inside each group."""
        groups: dict[PartitionKey, list[BufferedRecord]] = {}
        for rec in self.records:
            groups.setdefault(rec.key, []).append(rec)
        return groups


@dataclass(frozen=True)
class Ack:
    """Successful delivery of one batch."""

    destination_id: str
    batch_id: str
    event_count: int
    attempts: int = 1
