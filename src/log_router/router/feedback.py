"""
Backpressure feedback for the log router.

Provides in-process pub/sub for per-destination backpressure signals.
Subscribers (producer rate limiters, health endpoints, logging) react to
pending-event depth crossing the destination's watermarks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from loguru import logger


class BackpressureLevel(str, Enum):
    """Backpressure severity levels."""

    OK = "ok"  # At/below low watermark - normal operation
    SOFT = "soft"  # At/above high watermark - caution
    HARD = "hard"  # At ceiling - backpressure policy is being applied


@dataclass(frozen=True)
class FeedbackEvent:
    """Immutable backpressure feedback event.

    Attributes:
        destination_id: Destination whose buffer changed level
        pending: Buffered plus in-flight events
        ceiling: Configured backpressure ceiling
        level: Backpressure severity (OK, SOFT, HARD)
        reason: Optional context (e.g., "append", "delivered")
    """

    destination_id: str
    pending: int
    ceiling: int
    level: BackpressureLevel
    reason: Optional[str] = None

    @property
    def utilization(self) -> float:
        """Pending events as a fraction of the ceiling (0.0 to 1.0+)."""
        return self.pending / self.ceiling if self.ceiling > 0 else 0.0


class FeedbackSubscriber(Protocol):
    async def __call__(self, event: FeedbackEvent) -> None: ...


class Watermarks:
    """Level tracker with hysteresis: SOFT at high, HARD at ceiling, OK at low."""

    def __init__(self, ceiling: int, high: Optional[int] = None, low: Optional[int] = None):
        self.ceiling = ceiling
        self.high = high if high is not None else max(1, int(0.8 * ceiling))
        self.low = low if low is not None else int(0.5 * ceiling)
        self.level = BackpressureLevel.OK

    def update(self, pending: int) -> Optional[BackpressureLevel]:
        """Return the new level if ``pending`` changed it, else None."""
        if pending >= self.ceiling:
            new = BackpressureLevel.HARD
        elif pending >= self.high:
            new = BackpressureLevel.SOFT
        elif pending <= self.low:
            new = BackpressureLevel.OK
        else:
            # between watermarks: keep OK/SOFT, step down from HARD
            new = BackpressureLevel.SOFT if self.level == BackpressureLevel.HARD else self.level
        if new == self.level:
            return None
        self.level = new
        return new


class FeedbackBus:
    """Fan backpressure transitions out to async callbacks, in subscription order.

    A callback that raises is logged and skipped; the rest still run.
    """

    def __init__(self) -> None:
        self._subs: list[FeedbackSubscriber] = []

    def subscribe(self, callback: FeedbackSubscriber) -> None:
        if callback in self._subs:
            return
        self._subs.append(callback)

    def unsubscribe(self, callback: FeedbackSubscriber) -> None:
        if callback in self._subs:
            self._subs.remove(callback)

    async def publish(self, event: FeedbackEvent) -> None:
        # snapshot: callbacks may unsubscribe themselves
        for callback in tuple(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(
                    f"[{event.destination_id}] feedback callback {callback!r} failed on "
                    f"{event.level.value}: {exc!r}"
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
