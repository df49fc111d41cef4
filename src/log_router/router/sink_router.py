from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from ..classify import PartitionKeyExtractor, route
from ..errors import DeliveryFailed, MalformedEvent, RouterClosed
from ..metrics import DELIVERY_FAILURES_TOTAL, DELIVERY_LATENCY, EVENTS_REJECTED_TOTAL
from ..models import Ack, Batch, BufferedRecord, Event, FlushReason
from ..settings import DestinationConfig, RouterSettings
from ..wire import encoded_size
from .buffer import BufferState, EventBuffer
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent
from .policy import RetryPolicy
from .retry import RetryManager
from .scheduler import FlushScheduler
from .types import DropCallback, FailureCallback, Sink

Outcome = Union[Ack, DeliveryFailed]


@dataclass(frozen=True)
class Destination:
    """A configured destination and the sink that receives its batches."""

    config: DestinationConfig
    sink: Sink
    retry_policy: Optional[RetryPolicy] = None


@dataclass
class FlushReport:
    acks: List[Ack] = field(default_factory=list)
    failures: List[DeliveryFailed] = field(default_factory=list)

    @property
    def batches(self) -> int:
        return len(self.acks) + len(self.failures)

    @property
    def delivered_events(self) -> int:
        return sum(a.event_count for a in self.acks)

    def add(self, outcome: Outcome) -> None:
        if isinstance(outcome, DeliveryFailed):
            self.failures.append(outcome)
        else:
            self.acks.append(outcome)


@dataclass
class ShutdownReport(FlushReport):
    undelivered_events: int = 0
    abandoned_batches: int = 0


@dataclass(frozen=True)
class DestinationHealth:
    destination_id: str
    state: str
    buffered: int
    buffered_bytes: int
    in_flight: int
    pending: int
    ceiling: int
    level: str
    delivered: int
    failed: int
    dropped: int
    batches_flushed: int


@dataclass(frozen=True)
class RouterHealth:
    closed: bool
    scheduler_running: bool
    destinations: Dict[str, DestinationHealth]

    @property
    def pending(self) -> int:
        return sum(d.pending for d in self.destinations.values())


class _Lane:
    """Buffer, sink and delivery serialization for one destination."""

    def __init__(self, destination: Destination, buffer: EventBuffer, retry: RetryManager, serialize: bool):
        self.destination = destination
        self.buffer = buffer
        self.retry = retry
        self.delivery_lock: Optional[asyncio.Lock] = asyncio.Lock() if serialize else None

    @property
    def config(self) -> DestinationConfig:
        return self.destination.config

    @property
    def sink(self) -> Sink:
        return self.destination.sink


class SinkRouter:
    """
    Buffered multi-destination log router.

    Usage:

        router = SinkRouter(
            [
                Destination(DestinationConfig(destination_id="alert", severity_threshold="error",
                                              max_batch_events=1), alert_sink),
                Destination(DestinationConfig(destination_id="archive", max_batch_events=500,
                                              max_batch_age=5.0), archive_sink),
            ],
            on_failure=dlq.handler(),
        )
        async with router:
            await router.submit(Event(timestamp=..., severity="error", source="order-service", ...))
        # shutdown on exit: buffers drained, deliveries awaited

    ``submit`` only touches in-memory buffers. Each drained batch is delivered
    on its own tracked task through the destination's RetryManager;
    deliveries for one destination are serialized (FIFO) unless
    ``serialize_deliveries`` is False. Terminal failures go to ``on_failure``
    and into flush/shutdown reports; they are never raised to producers.
    """

    def __init__(
        self,
        destinations: Iterable[Destination],
        *,
        tick_interval: float = 0.25,
        shutdown_timeout: float = 10.0,
        extractor: Optional[PartitionKeyExtractor] = None,
        on_failure: Optional[FailureCallback] = None,
        on_drop: Optional[DropCallback] = None,
        feedback: Optional[FeedbackBus] = None,
        serialize_deliveries: bool = True,
        retry_sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self._extractor = extractor or PartitionKeyExtractor()
        self._on_failure = on_failure
        self._on_drop = on_drop
        self._feedback = feedback
        self.shutdown_timeout = shutdown_timeout

        self._lanes: Dict[str, _Lane] = {}
        for dest in destinations:
            dest_id = dest.config.destination_id
            if dest_id in self._lanes:
                raise ValueError(f"duplicate destination_id: {dest_id!r}")
            policy = dest.retry_policy or RetryPolicy.from_config(dest.config)
            buffer = EventBuffer(
                dest.config,
                lambda batch, _id=dest_id: self._dispatch(self._lanes[_id], batch),
                clock=clock,
            )
            self._lanes[dest_id] = _Lane(dest, buffer, RetryManager(policy, sleep=retry_sleep), serialize_deliveries)
        if not self._lanes:
            raise ValueError("at least one destination is required")

        self._rules = [lane.config.rule for lane in self._lanes.values()]
        self._scheduler = FlushScheduler([lane.buffer for lane in self._lanes.values()], tick_interval)
        self._inflight: Dict[asyncio.Task, Batch] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_report: Optional[ShutdownReport] = None

    @classmethod
    def from_settings(cls, settings: RouterSettings, sinks: Mapping[str, Sink], **kwargs: Any) -> "SinkRouter":
        """Build a router from RouterSettings; ``sinks`` maps destination_id to Sink."""
        missing = [d.destination_id for d in settings.destinations if d.destination_id not in sinks]
        if missing:
            raise ValueError(f"no sink configured for destinations: {missing}")
        destinations = [Destination(cfg, sinks[cfg.destination_id]) for cfg in settings.destinations]
        kwargs.setdefault("tick_interval", settings.tick_interval)
        kwargs.setdefault("shutdown_timeout", settings.shutdown_timeout)
        kwargs.setdefault("serialize_deliveries", settings.serialize_deliveries)
        kwargs.setdefault(
            "extractor",
            PartitionKeyExtractor(default_app=settings.default_app, hourly=settings.partition_hourly),
        )
        return cls(destinations, **kwargs)

    # --------------- lifecycle

    async def start(self) -> "SinkRouter":
        if self._closed:
            raise RouterClosed("router has been shut down")
        self._loop = asyncio.get_running_loop()
        self._scheduler.start()
        logger.info(f"SinkRouter started: destinations={list(self._lanes)}")
        return self

    async def __aenter__(self) -> "SinkRouter":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def destinations(self) -> List[str]:
        return list(self._lanes)

    def buffer(self, destination_id: str) -> EventBuffer:
        return self._lanes[destination_id].buffer

    # --------------- producer API

    async def submit(self, event: Union[Event, Mapping[str, Any]]) -> List[str]:
        """Route one event; returns the destination ids it was appended to.

        Raises MalformedEvent (never buffered) or RouterClosed. If shutdown
        interrupts a fan-out blocked on backpressure, the RouterClosed carries
        the destinations already appended to in ``appended``; those copies
        are still flushed and delivered by shutdown.
        """
        if self._closed:
            raise RouterClosed("router is shut down")
        ev = self._coerce(event)

        targets = route(ev, self._rules)
        if not targets:
            return []

        size = encoded_size(ev, default_app=self._extractor.default_app)
        for dest_id in targets:
            limit = self._lanes[dest_id].config.max_batch_bytes
            if size > limit:
                EVENTS_REJECTED_TOTAL.inc()
                raise MalformedEvent(
                    f"event {ev.event_id} is {size} bytes, above max_batch_bytes={limit} of {dest_id!r}"
                )
        record = BufferedRecord(ev, self._extractor(ev), size)

        appended: List[str] = []
        for dest_id in targets:
            lane = self._lanes[dest_id]
            try:
                result = await lane.buffer.append(record)
            except RouterClosed as exc:
                if not appended:
                    raise
                raise RouterClosed(
                    f"router closed during fan-out; event {ev.event_id} already in {appended}",
                    appended=tuple(appended),
                ) from exc
            if result.appended:
                appended.append(dest_id)
            if result.dropped is not None:
                await self._notify_drop(dest_id, result.dropped)
            if result.level is not None:
                await self._publish(lane, result.level, "append")
        return appended

    def submit_threadsafe(self, event: Union[Event, Mapping[str, Any]]) -> concurrent.futures.Future:
        """Submit from a thread other than the router's event loop."""
        if self._loop is None:
            raise RuntimeError("router not started")
        return asyncio.run_coroutine_threadsafe(self.submit(event), self._loop)

    # --------------- flushing

    async def flush(self, destination_id: str, reason: FlushReason = FlushReason.MANUAL) -> Optional[Outcome]:
        """Drain one destination and wait for that batch's outcome (None if empty)."""
        lane = self._lanes[destination_id]
        batch = await lane.buffer.flush(reason)
        if batch is None:
            return None
        return await self._tasks[batch.batch_id]

    async def flush_all(self, reason: FlushReason = FlushReason.MANUAL) -> FlushReport:
        """Drain every buffer and wait until the resulting deliveries finish."""
        tasks = await self._drain_all(reason)
        report = FlushReport()
        for outcome in await asyncio.gather(*tasks):
            report.add(outcome)
        if tasks:
            logger.debug(
                f"flush_all({reason.value}): {len(report.acks)} acked, {len(report.failures)} failed"
            )
        return report

    async def shutdown(self, timeout: Optional[float] = None) -> ShutdownReport:
        """Refuse new submits, flush everything, wait up to ``timeout`` for deliveries.

        Deliveries still running at the deadline are cancelled and counted in
        ``undelivered_events``. Idempotent.
        """
        if self._shutdown_report is not None:
            return self._shutdown_report
        timeout = self.shutdown_timeout if timeout is None else timeout

        self._closed = True
        for lane in self._lanes.values():
            await lane.buffer.close()
        await self._scheduler.stop()
        await self._drain_all(FlushReason.MANUAL)

        report = ShutdownReport()
        tasks = list(self._inflight)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                batch = self._inflight.get(task)
                if batch is not None:
                    report.undelivered_events += len(batch)
                    DELIVERY_FAILURES_TOTAL.labels(destination=batch.destination_id, kind="abandoned").inc()
                report.abandoned_batches += 1
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                report.add(task.result())

        self._shutdown_report = report
        if report.undelivered_events:
            logger.warning(
                f"SinkRouter shut down with {report.undelivered_events} undelivered events "
                f"({report.abandoned_batches} batches abandoned after {timeout}s)"
            )
        else:
            logger.success(
                f"SinkRouter shut down: {len(report.acks)} batches acked, {len(report.failures)} failed"
            )
        return report

    # --------------- health

    def health(self) -> RouterHealth:
        dests = {}
        for dest_id, lane in self._lanes.items():
            buf = lane.buffer
            dests[dest_id] = DestinationHealth(
                destination_id=dest_id,
                state=buf.state.value,
                buffered=buf.size,
                buffered_bytes=buf.bytes,
                in_flight=buf.in_flight,
                pending=buf.pending,
                ceiling=lane.config.backpressure_ceiling,
                level=buf.level.value,
                delivered=buf.delivered_events,
                failed=buf.failed_events,
                dropped=buf.dropped_events,
                batches_flushed=buf.batches_flushed,
            )
        return RouterHealth(closed=self._closed, scheduler_running=self._scheduler.running, destinations=dests)

    # --------------- internals

    def _coerce(self, event: Union[Event, Mapping[str, Any]]) -> Event:
        if isinstance(event, Event):
            if event.timestamp is None or event.severity is None:
                EVENTS_REJECTED_TOTAL.inc()
                raise MalformedEvent("event is missing timestamp or severity")
            return event
        if isinstance(event, Mapping):
            try:
                return Event.model_validate(dict(event))
            except ValidationError as e:
                EVENTS_REJECTED_TOTAL.inc()
                raise MalformedEvent(str(e)) from e
        EVENTS_REJECTED_TOTAL.inc()
        raise MalformedEvent(f"unsupported event type: {type(event).__name__}")

    async def _drain_all(self, reason: FlushReason) -> List[asyncio.Task]:
        tasks = []
        for lane in self._lanes.values():
            batch = await lane.buffer.flush(reason)
            if batch is not None:
                # the delivery task cannot have finished yet: it has not been scheduled
                tasks.append(self._tasks[batch.batch_id])
        return tasks

    def _dispatch(self, lane: _Lane, batch: Batch) -> None:
        """Hand a drained batch to its own delivery task (called under the buffer lock)."""
        task = asyncio.create_task(
            self._deliver(lane, batch), name=f"deliver-{batch.destination_id}-{batch.sequence}"
        )
        self._inflight[task] = batch
        self._tasks[batch.batch_id] = task

        def _forget(t: asyncio.Task, _batch_id: str = batch.batch_id) -> None:
            self._inflight.pop(t, None)
            self._tasks.pop(_batch_id, None)

        task.add_done_callback(_forget)

    async def _deliver(self, lane: _Lane, batch: Batch) -> Outcome:
        started = time.perf_counter()
        delivered = False
        try:
            async with lane.delivery_lock or contextlib.nullcontext():
                ack = await lane.retry.deliver(batch, lane.sink)
            delivered = True
            return ack
        except DeliveryFailed as failure:
            logger.error(f"[{batch.destination_id}] {failure}")
            await self._report_failure(failure)
            return failure
        except Exception as exc:
            # anything else escaping the retry loop still surfaces as DeliveryFailed
            logger.exception(f"[{batch.destination_id}] unexpected error delivering batch {batch.batch_id}")
            DELIVERY_FAILURES_TOTAL.labels(destination=batch.destination_id, kind="permanent").inc()
            failure = DeliveryFailed(
                batch.destination_id, batch.batch_id, len(batch), 1, exc, batch=batch
            )
            await self._report_failure(failure)
            return failure
        finally:
            DELIVERY_LATENCY.labels(destination=batch.destination_id).observe(time.perf_counter() - started)
            level = await lane.buffer.complete(batch, delivered=delivered)
            if level is not None:
                await self._publish(lane, level, "delivered" if delivered else "failed")

    async def _report_failure(self, failure: DeliveryFailed) -> None:
        if self._on_failure is None:
            return
        try:
            await self._on_failure(failure)
        except Exception:
            logger.exception(f"on_failure callback raised for batch {failure.batch_id}")

    async def _notify_drop(self, destination_id: str, event: Event) -> None:
        if self._on_drop is None:
            return
        try:
            await self._on_drop(destination_id, event)
        except Exception:
            logger.exception(f"on_drop callback raised for {destination_id!r}")

    async def _publish(self, lane: _Lane, level: BackpressureLevel, reason: str) -> None:
        if self._feedback is None:
            return
        await self._feedback.publish(
            FeedbackEvent(
                destination_id=lane.config.destination_id,
                pending=lane.buffer.pending,
                ceiling=lane.config.backpressure_ceiling,
                level=level,
                reason=reason,
            )
        )


__all__ = [
    "BufferState",
    "Destination",
    "DestinationHealth",
    "FlushReport",
    "RouterHealth",
    "ShutdownReport",
    "SinkRouter",
]
