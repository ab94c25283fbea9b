"""
In-process event bus for low-rate status traffic between modules.

Snapshots, motion notifications, health summaries and the bus' own
telemetry travel here. Every payload on these topics is superseded by the
next one, so publishing never waits: when the queue is full the oldest
pending envelope is discarded and counted in ``dropped_total``.

Each handler call runs as its own task, which means two payloads on the same
topic may be handled out of order. Telemetry state mutation therefore does
not go through the bus; the bridge keeps an ordered queue of its own.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import NamedTuple

from .contracts import BasePayload, BusStatus

logger = logging.getLogger(__name__)

Handler = Callable[[str, BasePayload], Awaitable[None] | None]

HIGH_WATERMARK = 0.75
CRITICAL_WATERMARK = 0.9


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    topic: str
    handler: Handler


class _Envelope(NamedTuple):
    topic: str
    payload: BasePayload
    enqueued_at: float


class EventBus:
    """Exact-topic publish/subscribe over a bounded, drop-oldest queue."""

    def __init__(
        self,
        *,
        queue_size: int = 256,
        telemetry_topic: str = "status.bus",
        telemetry_interval: float = 5.0,
        telemetry_enabled: bool = True,
    ) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be positive")
        self._pending: asyncio.Queue[_Envelope] = asyncio.Queue(maxsize=queue_size)
        self._handlers: dict[str, list[Handler]] = {}
        self._in_flight: set[asyncio.Task[None]] = set()
        self._dispatcher: asyncio.Task[None] | None = None
        self._reporter: asyncio.Task[None] | None = None
        self._telemetry_topic = telemetry_topic
        self._telemetry_interval = telemetry_interval
        self._telemetry_enabled = telemetry_enabled
        self._published = 0
        self._delivered = 0
        self._dropped = 0
        self._last_latency = 0.0

    @property
    def running(self) -> bool:
        return self._dispatcher is not None

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        self._handlers.setdefault(topic, []).append(handler)
        logger.debug("Subscribed %r to %s", handler, topic)
        return Subscription(topic=topic, handler=handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.topic)
        if not handlers or subscription.handler not in handlers:
            return
        handlers.remove(subscription.handler)
        if not handlers:
            del self._handlers[subscription.topic]

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Queue ``payload`` for ``topic``; never blocks the publisher."""
        envelope = _Envelope(topic, payload, time.monotonic())
        self._published += 1
        try:
            self._pending.put_nowait(envelope)
        except asyncio.QueueFull:
            stale = self._pending.get_nowait()
            self._pending.task_done()
            self._dropped += 1
            logger.warning("Bus queue full; discarded a pending %s payload", stale.topic)
            self._pending.put_nowait(envelope)

    async def start(self) -> None:
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="bridgewatch-bus")
            logger.info("Event bus started (capacity %d).", self._pending.maxsize)
        if self._telemetry_enabled and self._reporter is None:
            self._reporter = asyncio.create_task(self._report_loop(), name="bridgewatch-bus-telemetry")

    async def stop(self) -> None:
        """Cancel the loops, let in-flight handlers finish, discard the backlog."""
        if self._dispatcher is None:
            return
        for task in (self._reporter, self._dispatcher):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reporter = None
        self._dispatcher = None
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        discarded = 0
        while not self._pending.empty():
            self._pending.get_nowait()
            self._pending.task_done()
            discarded += 1
        if discarded:
            self._dropped += discarded
            logger.info("Event bus discarded %d pending payloads on shutdown.", discarded)
        logger.info("Event bus stopped.")

    def status(self) -> BusStatus:
        depth = self._pending.qsize()
        capacity = self._pending.maxsize
        fill = depth / capacity
        if fill >= CRITICAL_WATERMARK:
            watermark = "critical"
        elif fill >= HIGH_WATERMARK:
            watermark = "high"
        else:
            watermark = "normal"
        return BusStatus(
            queue_depth=depth,
            queue_capacity=capacity,
            subscriber_count=sum(len(handlers) for handlers in self._handlers.values()),
            topic_count=len(self._handlers),
            published_total=self._published,
            processed_total=self._delivered,
            dropped_total=self._dropped,
            lag_seconds=self._last_latency,
            watermark=watermark,
        )

    async def _dispatch_loop(self) -> None:
        while True:
            envelope = await self._pending.get()
            try:
                self._deliver(envelope)
            finally:
                self._pending.task_done()

    def _deliver(self, envelope: _Envelope) -> None:
        handlers = self._handlers.get(envelope.topic)
        if not handlers:
            return
        for handler in list(handlers):
            task = asyncio.create_task(self._invoke(handler, envelope))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        self._delivered += 1
        self._last_latency = max(0.0, time.monotonic() - envelope.enqueued_at)

    async def _invoke(self, handler: Handler, envelope: _Envelope) -> None:
        try:
            result = handler(envelope.topic, envelope.payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Handler %r failed on topic %s", handler, envelope.topic)

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._telemetry_interval)
            await self.publish(self._telemetry_topic, self.status())


__all__ = ["EventBus", "Subscription"]
