from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from ..models import Ack, Batch, Event


class InMemorySink:
    """In-memory sink for tests and local debugging.

    With ``dedupe=True`` events already stored (by ``event_id``) are skipped,
    which makes retried or replayed batches idempotent.
    """

    def __init__(self, destination_id: str = "memory", *, dedupe: bool = False) -> None:
        self.destination_id = destination_id
        self.dedupe = dedupe
        self.batches: List[Batch] = []
        self._lock = asyncio.Lock()

    async def put(self, batch: Batch) -> Optional[Ack]:
        async with self._lock:
            self.batches.append(batch)
        return Ack(batch.destination_id, batch.batch_id, len(batch))

    def snapshot(self) -> Sequence[Event]:
        """All stored events, in delivery order."""
        out: List[Event] = []
        seen: set[str] = set()
        for batch in self.batches:
            for ev in batch.events:
                if self.dedupe and ev.event_id in seen:
                    continue
                seen.add(ev.event_id)
                out.append(ev)
        return out

    @property
    def event_count(self) -> int:
        return len(self.snapshot())
