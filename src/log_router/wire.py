"""
Structured-JSON wire shape for events.

    {"timestamp": "2024-05-01T12:00:00.000000Z", "level": "ERROR", "app": "order-service",
     "message": "...", "exception": null, "request_id": "..."}

Attributes are flattened as top-level string fields. An attribute whose name
collides with a reserved key is emitted as ``attr.<name>``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence

from .classify import DEFAULT_APP
from .models import BufferedRecord, Event, Severity

RESERVED_KEYS = frozenset({"timestamp", "level", "app", "message", "exception"})


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 in UTC with a ``Z`` suffix and microsecond precision."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def to_wire(event: Event, *, default_app: str = DEFAULT_APP) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "timestamp": format_timestamp(event.timestamp),
        "level": event.severity.name,
        "app": (event.source or "").strip() or default_app,
        "message": event.message,
        "exception": event.raw_exception,
    }
    for key, value in event.attributes.items():
        doc[f"attr.{key}" if key in RESERVED_KEYS else key] = value
    return doc


def from_wire(doc: Dict[str, Any]) -> Event:
    """Rebuild an Event from its wire shape (event_id is not carried)."""
    attributes = {}
    for key, value in doc.items():
        if key in RESERVED_KEYS:
            continue
        if key.startswith("attr.") and key[5:] in RESERVED_KEYS:
            key = key[5:]
        attributes[key] = value
    return Event(
        timestamp=parse_timestamp(doc["timestamp"]),
        severity=Severity.parse(doc["level"]),
        source=doc.get("app") or "",
        message=doc.get("message") or "",
        raw_exception=doc.get("exception"),
        attributes=attributes,
    )


def dumps(event: Event, *, default_app: str = DEFAULT_APP) -> str:
    return json.dumps(to_wire(event, default_app=default_app), separators=(",", ":"), ensure_ascii=False)


def encoded_size(event: Event, *, default_app: str = DEFAULT_APP) -> int:
    """Serialized size in bytes, used for the ``max_batch_bytes`` trigger."""
    return len(dumps(event, default_app=default_app).encode("utf-8"))


def to_ndjson(events: Iterable[Event], *, default_app: str = DEFAULT_APP) -> str:
    return "".join(dumps(e, default_app=default_app) + "\n" for e in events)


def from_ndjson(text: str) -> List[Event]:
    return [from_wire(json.loads(line)) for line in text.splitlines() if line.strip()]


def sorted_by_timestamp(records: Sequence[BufferedRecord]) -> List[BufferedRecord]:
    """Stable timestamp ordering, for sinks requiring increasing sequence."""
    return sorted(records, key=lambda r: r.event.timestamp)
