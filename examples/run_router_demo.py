"""
Demo for SinkRouter.

Shows:
- alert + archive fan-out by severity
- Prometheus metrics (exposed on :8000/metrics)
- Dead Letter Queue (file-based NDJSON) for terminal failures
- Backpressure feedback
- Environment-based settings
- Health monitoring
"""

import asyncio
import random
from datetime import datetime, timezone

from loguru import logger
from prometheus_client import start_http_server

from log_router import (
    DeadLetterQueue,
    Destination,
    DestinationConfig,
    Event,
    FeedbackBus,
    RouterSettings,
    Severity,
    SinkRouter,
    TransientSinkError,
)
from log_router.router import BackpressureLevel, FeedbackEvent
from log_router.sinks import InMemorySink, NDJSONArchiveSink


class FlakyAlertSink(InMemorySink):
    """Fails sometimes to demonstrate retries + DLQ."""

    def __init__(self, fail_every: int = 7):
        super().__init__("alert")
        self._n = 0
        self.fail_every = max(2, fail_every)

    async def put(self, batch):
        self._n += 1
        if self._n % self.fail_every == 0:
            raise TransientSinkError("simulated throttling")
        await asyncio.sleep(0.002)  # simulate I/O
        return await super().put(batch)


async def on_feedback(event: FeedbackEvent):
    if event.level == BackpressureLevel.HARD:
        logger.warning(f"⚠️  Backpressure HARD on {event.destination_id} ({event.utilization:.0%})")
    elif event.level == BackpressureLevel.OK:
        logger.info(f"✅ Backpressure recovered on {event.destination_id}")


async def main():
    start_http_server(8000)
    logger.info("📊 Prometheus metrics available at http://localhost:8000/metrics")

    cfg = RouterSettings()
    logger.info(f"⚙️  Loaded settings: tick={cfg.tick_interval}s, default_app={cfg.default_app}")

    dlq = DeadLetterQueue(".dlq/failed.ndjson")
    bus = FeedbackBus()
    bus.subscribe(on_feedback)

    alert_sink = FlakyAlertSink()
    archive_sink = NDJSONArchiveSink(".archive", default_app=cfg.default_app)

    router = SinkRouter(
        [
            Destination(
                DestinationConfig(
                    destination_id="alert",
                    severity_threshold="warning",
                    max_batch_events=10,
                    max_batch_age=0.5,
                    retry_max_attempts=3,
                ),
                alert_sink,
            ),
            Destination(
                DestinationConfig(
                    destination_id="archive",
                    max_batch_events=500,
                    max_batch_age=2.0,
                    backpressure_ceiling=5_000,
                    backpressure_policy="drop_oldest",
                ),
                archive_sink,
            ),
        ],
        tick_interval=cfg.tick_interval,
        on_failure=dlq.handler(stage="demo"),
        feedback=bus,
    )

    apps = ["order-service", "billing", "inventory", ""]
    severities = list(Severity)

    async with router:
        logger.info("📦 Submitting 10,000 events...")
        for i in range(10_000):
            await router.submit(
                Event(
                    timestamp=datetime.now(timezone.utc),
                    severity=random.choices(severities, weights=[20, 60, 12, 6, 2])[0],
                    source=random.choice(apps),
                    message=f"event {i}",
                    attributes={"request_id": f"req-{i}"},
                )
            )
            if i % 2500 == 0 and i > 0:
                h = router.health()
                logger.info(f"Progress: {i}/10000 | pending={h.pending}")
                await asyncio.sleep(0)

        await asyncio.sleep(1.0)
        for dest, h in router.health().destinations.items():
            logger.info(
                f"{dest}: delivered={h.delivered} failed={h.failed} dropped={h.dropped} "
                f"batches={h.batches_flushed}"
            )

    logger.success(f"✅ Done. Alert events stored: {alert_sink.event_count}")
    failed = await dlq.replay(100)
    if failed:
        logger.warning(f"📁 {len(failed)} failed batch(es) in .dlq/failed.ndjson")


if __name__ == "__main__":
    asyncio.run(main())
