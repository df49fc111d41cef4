"""
Unit tests for router metrics (light sanity checks).
"""

import pytest

from log_router import Destination, DestinationConfig, SinkRouter, TransientSinkError
from log_router.metrics import (
    BATCHES_FLUSHED_TOTAL,
    DELIVERY_ATTEMPTS_TOTAL,
    EVENTS_SUBMITTED_TOTAL,
    PENDING_EVENTS,
)
from log_router.sinks import InMemorySink


def _sample(metric, name_suffix, **labels):
    for family in metric.collect():
        for s in family.samples:
            if s.name.endswith(name_suffix) and all(s.labels.get(k) == v for k, v in labels.items()):
                return s.value
    return 0.0


class OnceFlakySink(InMemorySink):
    def __init__(self):
        super().__init__()
        self.failed = False

    async def put(self, batch):
        if not self.failed:
            self.failed = True
            raise TransientSinkError("throttled")
        return await super().put(batch)


async def _no_sleep(_delay):
    return None


@pytest.mark.asyncio
async def test_metrics_recorded_for_destination(make_event):
    dest = "metrics-test"
    before_submitted = _sample(EVENTS_SUBMITTED_TOTAL, "_total", destination=dest)
    before_size = _sample(BATCHES_FLUSHED_TOTAL, "_total", destination=dest, reason="size")
    before_transient = _sample(DELIVERY_ATTEMPTS_TOTAL, "_total", destination=dest, outcome="transient")
    before_success = _sample(DELIVERY_ATTEMPTS_TOTAL, "_total", destination=dest, outcome="success")

    router = SinkRouter(
        [Destination(DestinationConfig(destination_id=dest, max_batch_events=3), OnceFlakySink())],
        retry_sleep=_no_sleep,
    )
    for _ in range(3):
        await router.submit(make_event())
    await router.shutdown()

    assert _sample(EVENTS_SUBMITTED_TOTAL, "_total", destination=dest) == before_submitted + 3
    assert _sample(BATCHES_FLUSHED_TOTAL, "_total", destination=dest, reason="size") == before_size + 1
    assert _sample(DELIVERY_ATTEMPTS_TOTAL, "_total", destination=dest, outcome="transient") == before_transient + 1
    assert _sample(DELIVERY_ATTEMPTS_TOTAL, "_total", destination=dest, outcome="success") == before_success + 1
    assert _sample(PENDING_EVENTS, "", destination=dest) == 0
