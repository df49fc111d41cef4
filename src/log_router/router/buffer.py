from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

from loguru import logger

from ..errors import RouterClosed
from ..metrics import BATCHES_FLUSHED_TOTAL, EVENTS_DROPPED_TOTAL, EVENTS_SUBMITTED_TOTAL, PENDING_EVENTS
from ..models import Batch, BufferedRecord, Event, FlushReason
from ..settings import DestinationConfig
from .feedback import BackpressureLevel, Watermarks


class BufferState(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    DRAINING = "draining"


@dataclass(frozen=True)
class AppendResult:
    appended: bool
    dropped: Optional[Event] = None
    level: Optional[BackpressureLevel] = None  # set when the backpressure level changed


class EventBuffer:
    """Per-destination accumulation of events awaiting flush.

    Append, drain and delivery bookkeeping all run under one asyncio.Condition,
    so no event is lost or duplicated between an append and a flush. The lock
    is never held across sink I/O: a drained batch is passed to ``handoff``,
    which only schedules delivery.

    ``pending`` (buffered + in-flight events) is compared against the
    destination's backpressure ceiling:
    - block: wait until deliveries complete
    - drop_newest: discard the incoming event
    - drop_oldest: discard the oldest buffered event (the incoming one if
      nothing is buffered)
    """

    def __init__(
        self,
        config: DestinationConfig,
        handoff: Callable[[Batch], None],
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._handoff = handoff
        self._clock = clock

        self._records: Deque[BufferedRecord] = deque()
        self._arrivals: Deque[float] = deque()
        self._bytes = 0
        self._in_flight = 0
        self._sequence = 0
        self._closed = False
        self._cond = asyncio.Condition()
        self._watermarks = Watermarks(config.backpressure_ceiling)

        self.state = BufferState.EMPTY
        self.delivered_events = 0
        self.failed_events = 0
        self.dropped_events = 0
        self.batches_flushed = 0

    # --------------- introspection

    @property
    def destination_id(self) -> str:
        return self.config.destination_id

    @property
    def size(self) -> int:
        return len(self._records)

    @property
    def bytes(self) -> int:
        return self._bytes

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def pending(self) -> int:
        return len(self._records) + self._in_flight

    @property
    def level(self) -> BackpressureLevel:
        return self._watermarks.level

    def oldest_age(self) -> Optional[float]:
        if not self._arrivals:
            return None
        return self._clock() - self._arrivals[0]

    def snapshot(self) -> List[Event]:
        """Point-in-time copy of buffered (not yet flushed) events."""
        return [r.event for r in self._records]

    # --------------- mutation

    async def append(self, record: BufferedRecord) -> AppendResult:
        """Append one record, applying backpressure and the size trigger."""
        dest = self.destination_id
        async with self._cond:
            if self._closed:
                raise RouterClosed(f"destination {dest!r} is closed")

            dropped: Optional[Event] = None
            ceiling = self.config.backpressure_ceiling
            if self.pending >= ceiling:
                policy = self.config.backpressure_policy
                if policy == "block":
                    logger.debug(f"[{dest}] backpressure: blocking producer (pending={self.pending})")
                    await self._cond.wait_for(lambda: self._closed or self.pending < ceiling)
                    if self._closed:
                        raise RouterClosed(f"destination {dest!r} closed while blocked")
                elif policy == "drop_newest" or not self._records:
                    self._count_drop(policy)
                    return AppendResult(False, dropped=record.event, level=self._track())
                else:
                    old = self._records.popleft()
                    self._arrivals.popleft()
                    self._bytes -= old.size_bytes
                    dropped = old.event
                    self._count_drop(policy)

            if self._records and self._bytes + record.size_bytes > self.config.max_batch_bytes:
                self._drain(FlushReason.SIZE)

            self._records.append(record)
            self._arrivals.append(self._clock())
            self._bytes += record.size_bytes
            self.state = BufferState.ACCUMULATING
            EVENTS_SUBMITTED_TOTAL.labels(destination=dest).inc()

            if (
                len(self._records) >= self.config.max_batch_events
                or self._bytes >= self.config.max_batch_bytes
            ):
                self._drain(FlushReason.SIZE)

            return AppendResult(True, dropped=dropped, level=self._track())

    async def flush(self, reason: FlushReason = FlushReason.MANUAL) -> Optional[Batch]:
        """Drain now; returns None (no-op) when the buffer is empty."""
        async with self._cond:
            return self._drain(reason)

    async def flush_if_due(self) -> Optional[Batch]:
        """Drain if the oldest buffered event has waited ``max_batch_age``."""
        async with self._cond:
            age = self.oldest_age()
            if age is None or age < self.config.max_batch_age:
                return None
            return self._drain(FlushReason.TIME)

    async def complete(self, batch: Batch, *, delivered: bool) -> Optional[BackpressureLevel]:
        """Record the terminal outcome of a handed-off batch and wake blocked producers."""
        async with self._cond:
            n = len(batch)
            self._in_flight -= n
            if delivered:
                self.delivered_events += n
            else:
                self.failed_events += n
            self._cond.notify_all()
            return self._track()

    async def close(self) -> None:
        """Refuse further appends; producers blocked on backpressure get RouterClosed."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    # --------------- internals (caller holds the lock)

    def _drain(self, reason: FlushReason) -> Optional[Batch]:
        if not self._records:
            return None
        self.state = BufferState.DRAINING
        self._sequence += 1
        batch = Batch(
            destination_id=self.destination_id,
            records=tuple(self._records),
            reason=reason,
            sequence=self._sequence,
        )
        self._records.clear()
        self._arrivals.clear()
        self._bytes = 0
        self._in_flight += len(batch)
        self._handoff(batch)
        self.state = BufferState.EMPTY
        self.batches_flushed += 1
        BATCHES_FLUSHED_TOTAL.labels(destination=self.destination_id, reason=reason.value).inc()
        logger.debug(
            f"[{self.destination_id}] flushed batch #{batch.sequence} "
            f"({len(batch)} events, {batch.size_bytes} bytes, reason={reason.value})"
        )
        return batch

    def _count_drop(self, policy: str) -> None:
        self.dropped_events += 1
        EVENTS_DROPPED_TOTAL.labels(destination=self.destination_id, policy=policy).inc()
        logger.warning(
            f"[{self.destination_id}] backpressure ceiling reached "
            f"({self.config.backpressure_ceiling}), policy={policy}: event dropped"
        )

    def _track(self) -> Optional[BackpressureLevel]:
        PENDING_EVENTS.labels(destination=self.destination_id).set(self.pending)
        return self._watermarks.update(self.pending)
