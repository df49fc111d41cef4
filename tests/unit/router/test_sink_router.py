"""
Unit tests for SinkRouter routing, flushing, failure reporting and shutdown.
"""

import asyncio

import pytest

from log_router import (
    DeliveryFailed,
    Destination,
    DestinationConfig,
    Event,
    FlushReason,
    MalformedEvent,
    PermanentSinkError,
    RouterClosed,
    RouterSettings,
    Severity,
    SinkRouter,
    TransientSinkError,
)
from log_router.router import RetryPolicy
from log_router.sinks import InMemorySink


class FlakySink(InMemorySink):
    """Sink that raises the scripted errors first, then stores batches."""

    def __init__(self, *errors, delay: float = 0.0):
        super().__init__()
        self.errors = list(errors)
        self.calls = 0
        self.delay = delay

    async def put(self, batch):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return await super().put(batch)


async def _no_sleep(_delay):
    await asyncio.sleep(0)


def _router(sinks, configs, **kwargs):
    kwargs.setdefault("retry_sleep", _no_sleep)
    kwargs.setdefault("tick_interval", 0.02)
    return SinkRouter([Destination(cfg, sinks[cfg.destination_id]) for cfg in configs], **kwargs)


@pytest.mark.asyncio
async def test_fan_out_matches_rules(make_event):
    sinks = {"alert": InMemorySink(), "archive": InMemorySink(), "pager": InMemorySink()}
    router = _router(
        sinks,
        [
            DestinationConfig(destination_id="alert", severity_threshold="error"),
            DestinationConfig(destination_id="archive"),
            DestinationConfig(destination_id="pager", severity_threshold="critical"),
        ],
    )
    assert await router.submit(make_event(Severity.ERROR)) == ["alert", "archive"]
    assert await router.submit(make_event(Severity.INFO)) == ["archive"]
    assert await router.submit(make_event(Severity.CRITICAL)) == ["alert", "archive", "pager"]

    assert router.buffer("alert").size == 2
    assert router.buffer("archive").size == 3
    assert router.buffer("pager").size == 1
    await router.shutdown()


@pytest.mark.asyncio
async def test_critical_event_flushes_alert_immediately(make_event):
    """Critical event with max_batch_events=1 on alert: one batch, archive keeps accumulating."""
    alert, archive = InMemorySink(), InMemorySink()
    router = _router(
        {"alert": alert, "archive": archive},
        [
            DestinationConfig(destination_id="alert", severity_threshold="error", max_batch_events=1),
            DestinationConfig(destination_id="archive", max_batch_age=60.0),
        ],
    )
    async with router:
        await router.submit(make_event(Severity.CRITICAL, source="order-service"))
        await asyncio.sleep(0.05)

        assert len(alert.batches) == 1
        assert len(alert.batches[0]) == 1
        assert alert.batches[0].reason == FlushReason.SIZE
        assert alert.batches[0].records[0].key.app == "order-service"
        assert archive.batches == []
        assert router.buffer("archive").size == 1

    assert len(archive.batches) == 1


@pytest.mark.asyncio
async def test_transient_twice_then_ack(make_event):
    archive = FlakySink(TransientSinkError("throttled"), TransientSinkError("throttled"))
    failures = []

    async def on_failure(f):
        failures.append(f)

    router = _router(
        {"archive": archive},
        [DestinationConfig(destination_id="archive", retry_max_attempts=3)],
        on_failure=on_failure,
    )
    await router.submit(make_event())
    report = await router.flush_all()

    assert archive.calls == 3
    assert len(report.acks) == 1
    assert report.acks[0].attempts == 3
    assert report.failures == []
    assert failures == []
    await router.shutdown()


@pytest.mark.asyncio
async def test_permanent_error_reports_delivery_failed(make_event):
    archive = FlakySink(PermanentSinkError("ResourceNotFound"))
    failures = []

    async def on_failure(f):
        failures.append(f)

    router = _router(
        {"archive": archive},
        [DestinationConfig(destination_id="archive", retry_max_attempts=5)],
        on_failure=on_failure,
    )
    await router.submit(make_event())
    await router.submit(make_event())
    report = await router.flush_all()

    assert archive.calls == 1
    assert len(report.failures) == 1
    assert isinstance(report.failures[0], DeliveryFailed)
    assert report.failures[0].batch_size == 2
    assert failures == report.failures
    h = router.health().destinations["archive"]
    assert h.failed == 2
    assert h.pending == 0
    await router.shutdown()


@pytest.mark.asyncio
async def test_failing_callback_does_not_reach_producer(make_event):
    async def on_failure(f):
        raise RuntimeError("owner bug")

    router = _router(
        {"archive": FlakySink(PermanentSinkError("denied"))},
        [DestinationConfig(destination_id="archive", max_batch_events=1)],
        on_failure=on_failure,
    )
    await router.submit(make_event())
    await asyncio.sleep(0.02)
    await router.submit(make_event())
    report = await router.shutdown()
    assert report.undelivered_events == 0


@pytest.mark.asyncio
async def test_flush_all_twice_second_is_noop(make_event):
    sinks = {"alert": InMemorySink(), "archive": InMemorySink()}
    router = _router(
        sinks,
        [
            DestinationConfig(destination_id="alert", severity_threshold="error"),
            DestinationConfig(destination_id="archive"),
        ],
    )
    await router.submit(make_event(Severity.ERROR))
    await router.submit(make_event(Severity.INFO))

    first = await router.flush_all()
    second = await router.flush_all()

    assert sorted(a.destination_id for a in first.acks) == ["alert", "archive"]
    assert first.delivered_events == 3
    assert second.batches == 0
    assert all(d.buffered == 0 for d in router.health().destinations.values())
    await router.shutdown()


@pytest.mark.asyncio
async def test_flush_single_destination(make_event):
    sinks = {"alert": InMemorySink(), "archive": InMemorySink()}
    router = _router(
        sinks,
        [DestinationConfig(destination_id="alert"), DestinationConfig(destination_id="archive")],
    )
    await router.submit(make_event())
    ack = await router.flush("alert")
    assert ack.destination_id == "alert"
    assert await router.flush("alert") is None
    assert router.buffer("archive").size == 1
    await router.shutdown()


@pytest.mark.asyncio
async def test_malformed_events_rejected_and_not_buffered(make_event):
    router = _router({"archive": InMemorySink()}, [DestinationConfig(destination_id="archive")])

    with pytest.raises(MalformedEvent):
        await router.submit({"severity": "error", "message": "no timestamp"})
    with pytest.raises(MalformedEvent):
        await router.submit({"timestamp": "2024-05-01T00:00:00Z", "message": "no severity"})
    with pytest.raises(MalformedEvent):
        await router.submit("just a string")
    with pytest.raises(MalformedEvent):
        await router.submit({"timestamp": "2024-05-01T00:00:00Z", "severity": "info", "attributes": 5})

    assert router.buffer("archive").size == 0
    await router.shutdown()


@pytest.mark.asyncio
async def test_mapping_events_accepted():
    router = _router({"archive": InMemorySink()}, [DestinationConfig(destination_id="archive")])
    routed = await router.submit(
        {"timestamp": "2024-05-01T00:00:00Z", "severity": "warn", "source": "billing", "message": "slow"}
    )
    assert routed == ["archive"]
    ev = router.buffer("archive").snapshot()[0]
    assert isinstance(ev, Event)
    assert ev.severity is Severity.WARNING
    await router.shutdown()


@pytest.mark.asyncio
async def test_oversized_event_rejected_before_any_append(make_event):
    router = _router(
        {"alert": InMemorySink(), "archive": InMemorySink()},
        [
            DestinationConfig(destination_id="alert", max_batch_bytes=100_000),
            DestinationConfig(destination_id="archive", max_batch_bytes=200),
        ],
    )
    with pytest.raises(MalformedEvent):
        await router.submit(make_event(message="x" * 500))
    assert router.buffer("alert").size == 0
    await router.shutdown()


@pytest.mark.asyncio
async def test_concurrent_producers_no_loss_no_duplication(make_event):
    n_producers, m_events = 8, 125
    sinks = {"alert": InMemorySink(), "archive": InMemorySink()}
    router = _router(
        sinks,
        [
            DestinationConfig(destination_id="alert", severity_threshold="error", max_batch_events=7),
            DestinationConfig(destination_id="archive", max_batch_events=50),
        ],
    )

    async def producer(p):
        for i in range(m_events):
            sev = Severity.ERROR if i % 5 == 0 else Severity.INFO
            await router.submit(make_event(sev, message=f"{p}-{i}"))
            if i % 10 == 0:
                await asyncio.sleep(0)

    async with router:
        await asyncio.gather(*(producer(p) for p in range(n_producers)))

    archived = [e.event_id for e in sinks["archive"].snapshot()]
    alerted = [e.event_id for e in sinks["alert"].snapshot()]
    assert len(archived) == n_producers * m_events
    assert len(set(archived)) == len(archived)
    assert len(alerted) == n_producers * (m_events // 5)
    assert set(alerted) <= set(archived)
    assert all(len(b) <= 7 for b in sinks["alert"].batches)
    assert all(len(b) <= 50 for b in sinks["archive"].batches)


@pytest.mark.asyncio
async def test_deliveries_serialized_per_destination(make_event):
    order = []

    class SlowRecordingSink(InMemorySink):
        async def put(self, batch):
            order.append(("start", batch.sequence))
            await asyncio.sleep(0.01)
            order.append(("end", batch.sequence))
            return await super().put(batch)

    sink = SlowRecordingSink()
    router = _router({"archive": sink}, [DestinationConfig(destination_id="archive", max_batch_events=2)])
    for i in range(6):
        await router.submit(make_event(message=str(i)))
    await router.shutdown()

    assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2), ("start", 3), ("end", 3)]
    assert [e.message for e in sink.snapshot()] == [str(i) for i in range(6)]


@pytest.mark.asyncio
async def test_time_trigger_through_router(make_event):
    sink = InMemorySink()
    router = _router(
        {"archive": sink},
        [DestinationConfig(destination_id="archive", max_batch_age=0.05)],
        tick_interval=0.02,
    )
    async with router:
        await router.submit(make_event())
        await asyncio.sleep(0.2)
        assert len(sink.batches) == 1
        assert sink.batches[0].reason == FlushReason.TIME


@pytest.mark.asyncio
async def test_submit_after_shutdown_raises(make_event):
    router = _router({"archive": InMemorySink()}, [DestinationConfig(destination_id="archive")])
    await router.start()
    await router.shutdown()
    assert router.closed
    with pytest.raises(RouterClosed):
        await router.submit(make_event())
    # idempotent
    assert (await router.shutdown()) is (await router.shutdown())


@pytest.mark.asyncio
async def test_shutdown_leaves_no_buffered_events(make_event):
    sinks = {"alert": InMemorySink(), "archive": InMemorySink()}
    router = _router(
        sinks,
        [
            DestinationConfig(destination_id="alert", severity_threshold="error"),
            DestinationConfig(destination_id="archive"),
        ],
    )
    await router.start()
    for sev in (Severity.INFO, Severity.ERROR, Severity.DEBUG):
        await router.submit(make_event(sev))
    report = await router.shutdown()

    assert report.undelivered_events == 0
    assert sorted(a.destination_id for a in report.acks) == ["alert", "archive"]
    h = router.health()
    assert h.pending == 0
    assert not h.scheduler_running
    assert sinks["archive"].event_count == 3


@pytest.mark.asyncio
async def test_shutdown_timeout_abandons_slow_deliveries(make_event):
    sink = FlakySink(delay=5.0)
    router = _router({"archive": sink}, [DestinationConfig(destination_id="archive")])
    for _ in range(4):
        await router.submit(make_event())

    report = await router.shutdown(timeout=0.05)
    assert report.undelivered_events == 4
    assert report.abandoned_batches == 1
    assert sink.batches == []


@pytest.mark.asyncio
async def test_destinations_fail_independently(make_event):
    alert = FlakySink(PermanentSinkError("denied"))
    archive = InMemorySink()
    router = _router(
        {"alert": alert, "archive": archive},
        [
            DestinationConfig(destination_id="alert", severity_threshold="error"),
            DestinationConfig(destination_id="archive"),
        ],
    )
    await router.submit(make_event(Severity.ERROR))
    report = await router.flush_all()
    assert [f.destination_id for f in report.failures] == ["alert"]
    assert [a.destination_id for a in report.acks] == ["archive"]
    await router.shutdown()


@pytest.mark.asyncio
async def test_submit_threadsafe(make_event):
    sink = InMemorySink()
    router = _router({"archive": sink}, [DestinationConfig(destination_id="archive")])
    async with router:
        futures = []

        def worker():
            for i in range(10):
                futures.append(router.submit_threadsafe(make_event(message=str(i))))

        await asyncio.to_thread(worker)
        results = await asyncio.gather(*(asyncio.wrap_future(f) for f in futures))
        assert all(r == ["archive"] for r in results)
    assert sink.event_count == 10


def test_duplicate_destination_rejected():
    cfg = DestinationConfig(destination_id="archive")
    with pytest.raises(ValueError):
        SinkRouter([Destination(cfg, InMemorySink()), Destination(cfg, InMemorySink())])
    with pytest.raises(ValueError):
        SinkRouter([])


def test_from_settings_requires_every_sink():
    settings = RouterSettings(
        _env_file=None,
        destinations=[
            DestinationConfig(destination_id="alert", severity_threshold="error"),
            DestinationConfig(destination_id="archive"),
        ],
    )
    with pytest.raises(ValueError):
        SinkRouter.from_settings(settings, {"alert": InMemorySink()})
    router = SinkRouter.from_settings(settings, {"alert": InMemorySink(), "archive": InMemorySink()})
    assert router.destinations == ["alert", "archive"]


@pytest.mark.asyncio
async def test_loose_sink_return_value_is_acked(make_event):
    class TruthySink(InMemorySink):
        async def put(self, batch):
            await super().put(batch)
            return True

    sinks = {"archive": TruthySink()}
    router = _router(sinks, [DestinationConfig(destination_id="archive")])
    await router.submit(make_event())

    report = await router.flush_all()
    assert report.delivered_events == 1
    assert report.failures == []
    await router.shutdown()


@pytest.mark.asyncio
async def test_unexpected_delivery_error_becomes_delivery_failed(make_event):
    def broken_classifier(exc):
        raise RuntimeError("classifier bug")

    failures = []

    async def on_failure(failure):
        failures.append(failure)

    sink = FlakySink(ValueError("boom"))
    router = SinkRouter(
        [
            Destination(
                DestinationConfig(destination_id="archive"),
                sink,
                retry_policy=RetryPolicy(classify_retryable=broken_classifier),
            )
        ],
        on_failure=on_failure,
        retry_sleep=_no_sleep,
    )
    await router.submit(make_event())
    await router.submit(make_event())

    report = await router.flush_all()
    assert report.acks == []
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert isinstance(failure.last_error, RuntimeError)
    assert failure.batch_size == 2
    assert failures == [failure]
    assert router.buffer("archive").in_flight == 0

    await router.submit(make_event())
    shutdown = await router.shutdown()
    assert shutdown.delivered_events == 1
    assert shutdown.undelivered_events == 0
