from __future__ import annotations

import asyncio
import dataclasses
from typing import Awaitable, Callable, Optional

from loguru import logger

from ..errors import DeliveryFailed, SinkError, map_sink_error
from ..metrics import DELIVERY_ATTEMPTS_TOTAL, DELIVERY_FAILURES_TOTAL
from ..models import Ack, Batch
from .policy import RetryPolicy
from .types import Sink


class RetryManager:
    """Deliver one batch to one sink with bounded retry.

    Every attempt passes the identical Batch, so a sink that de-duplicates on
    ``event_id`` (or accepts at-least-once delivery) sees idempotent retries.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def deliver(self, batch: Batch, sink: Sink) -> Ack:
        """Return the Ack on success; raise DeliveryFailed otherwise."""
        dest = batch.destination_id
        attempt = 0
        waited = 0.0
        last_error: Optional[SinkError] = None

        while True:
            attempt += 1
            try:
                ack = await sink.put(batch)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = map_sink_error(exc, self.policy.classify_retryable)
            else:
                DELIVERY_ATTEMPTS_TOTAL.labels(destination=dest, outcome="success").inc()
                if attempt > 1:
                    logger.info(f"[{dest}] batch {batch.batch_id} delivered on attempt {attempt}")
                if isinstance(ack, Ack):
                    return dataclasses.replace(ack, attempts=attempt)
                # anything else a sink returns (None, True, ...) counts as acknowledged
                return Ack(dest, batch.batch_id, len(batch), attempts=attempt)

            if not last_error.transient:
                DELIVERY_ATTEMPTS_TOTAL.labels(destination=dest, outcome="permanent").inc()
                DELIVERY_FAILURES_TOTAL.labels(destination=dest, kind="permanent").inc()
                raise self._failed(batch, attempt, last_error)

            DELIVERY_ATTEMPTS_TOTAL.labels(destination=dest, outcome="transient").inc()
            if attempt >= self.policy.max_attempts:
                DELIVERY_FAILURES_TOTAL.labels(destination=dest, kind="exhausted").inc()
                raise self._failed(batch, attempt, last_error)

            delay = self.policy.next_backoff(attempt)
            if waited + delay > self.policy.max_total_wait:
                DELIVERY_FAILURES_TOTAL.labels(destination=dest, kind="exhausted").inc()
                logger.warning(
                    f"[{dest}] retry budget spent ({waited:.2f}s of {self.policy.max_total_wait:.2f}s)"
                )
                raise self._failed(batch, attempt, last_error)

            logger.warning(
                f"[{dest}] transient sink error on attempt {attempt}/{self.policy.max_attempts}, "
                f"retrying in {delay:.3f}s: {last_error}"
            )
            await self._sleep(delay)
            waited += delay

    @staticmethod
    def _failed(batch: Batch, attempts: int, last_error: SinkError) -> DeliveryFailed:
        failure = DeliveryFailed(
            destination_id=batch.destination_id,
            batch_id=batch.batch_id,
            batch_size=len(batch),
            attempts=attempts,
            last_error=last_error,
            batch=batch,
        )
        failure.__cause__ = last_error
        return failure
