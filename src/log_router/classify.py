"""
Severity classification and partition-key extraction.

Pure functions: no state, no I/O. The same event always yields the same
routes and the same partition key.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Iterable, List

from .models import Event, PartitionKey, RoutingRule, Severity

DEFAULT_APP = "unknown"


def matches(rule: RoutingRule, severity: Severity) -> bool:
    """True if an event of ``severity`` satisfies ``rule``."""
    return rule.matches(severity)


def route(event: Event, rules: Iterable[RoutingRule]) -> List[str]:
    """Destination ids whose rule the event satisfies, in rule order."""
    seen: list[str] = []
    for rule in rules:
        if rule.matches(event.severity) and rule.destination_id not in seen:
            seen.append(rule.destination_id)
    return seen


@dataclass(frozen=True)
class PartitionKeyExtractor:
    """Derive (app, date) addressing from an event.

    ``app`` is the stripped event source, or ``default_app`` when empty.
    The date is the event timestamp in UTC, truncated to the day, or the
    hour when ``hourly`` is set.
    """

    default_app: str = DEFAULT_APP
    hourly: bool = False

    def __call__(self, event: Event) -> PartitionKey:
        return partition_key(event, default_app=self.default_app, hourly=self.hourly)


def partition_key(event: Event, *, default_app: str = DEFAULT_APP, hourly: bool = False) -> PartitionKey:
    app = (event.source or "").strip() or default_app
    ts = event.timestamp.astimezone(timezone.utc)
    return PartitionKey(
        app=app,
        year=ts.year,
        month=ts.month,
        day=ts.day,
        hour=ts.hour if hourly else None,
    )
