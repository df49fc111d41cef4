"""
File-based dead letter queue for batches that failed terminally.

The router itself never persists failed batches; a DeadLetterQueue is one
collaborator an owner can wire in through ``on_failure``:

    dlq = DeadLetterQueue(".dlq/failed.ndjson")
    router = SinkRouter(destinations, on_failure=dlq.handler())

Each line is one JSON record:
    {"ts": ..., "destination_id": ..., "batch_id": ..., "error": ..., "events": [...], "metadata": {...}}
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from ..errors import DeliveryFailed
from ..models import Event, utc_now
from ..wire import format_timestamp, from_wire, to_wire


@dataclass(frozen=True)
class DLQRecord:
    ts: str
    destination_id: str
    batch_id: str
    error: str
    events: List[Dict[str, Any]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_events(self) -> List[Event]:
        """Rebuild the stored events (new event ids are generated)."""
        return [from_wire(doc) for doc in self.events]


class DeadLetterQueue:
    """Append-only NDJSON file of failed deliveries."""

    def __init__(self, path: Union[str, Path], *, mkdirs: bool = True):
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def save(
        self,
        failure: DeliveryFailed,
        events: Optional[Sequence[Event]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one failure; ``events`` defaults to the failed batch's events."""
        if events is None:
            events = failure.batch.events if failure.batch is not None else ()
        record = DLQRecord(
            ts=format_timestamp(utc_now()),
            destination_id=failure.destination_id,
            batch_id=failure.batch_id,
            error=repr(failure.last_error),
            events=[to_wire(e) for e in events],
            metadata={"attempts": failure.attempts, "batch_size": failure.batch_size, **(metadata or {})},
        )
        line = json.dumps(record.__dict__, separators=(",", ":"), ensure_ascii=False, default=str)
        async with self._lock:
            await asyncio.to_thread(self._append_line, line)
        logger.debug(f"DLQ: saved batch {failure.batch_id} ({len(events)} events) to {self.path}")

    async def replay(self, max_records: int = 1000) -> List[DLQRecord]:
        """Read up to ``max_records`` records from the start of the file."""
        if not self.path.exists():
            return []
        async with self._lock:
            lines = await asyncio.to_thread(self._read_lines, max_records)
        return [DLQRecord(**json.loads(line)) for line in lines]

    def handler(self, **metadata: Any):
        """An ``on_failure`` callback that saves every DeliveryFailed."""

        async def _on_failure(failure: DeliveryFailed) -> None:
            await self.save(failure, metadata=metadata)

        return _on_failure

    # --------------- file I/O (runs in a worker thread)

    def _append_line(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self, max_records: int) -> List[str]:
        out: List[str] = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                out.append(line)
                if len(out) >= max_records:
                    break
        return out
