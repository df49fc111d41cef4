from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from loguru import logger

from .buffer import EventBuffer


class FlushScheduler:
    """Background time trigger.

    Every ``tick_interval`` seconds each buffer whose oldest event has waited
    ``max_batch_age`` is drained, so no event stays buffered longer than
    ``max_batch_age`` plus one tick. The size trigger is not handled here; it
    runs synchronously inside ``EventBuffer.append``.
    """

    def __init__(self, buffers: Sequence[EventBuffer], tick_interval: float = 0.25):
        if tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")
        self._buffers = list(buffers)
        self.tick_interval = tick_interval
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="log-router-flush-scheduler")
        logger.debug(f"FlushScheduler started (tick={self.tick_interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.debug("FlushScheduler stopped")

    async def tick(self) -> int:
        """Evaluate the time trigger once; returns the number of batches flushed."""
        flushed = 0
        for buf in self._buffers:
            if await buf.flush_if_due() is not None:
                flushed += 1
        return flushed

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            try:
                await self.tick()
            except Exception:
                logger.exception("FlushScheduler tick failed")
