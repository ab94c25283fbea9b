"""
Periodic snapshot publisher.

Builds a fresh status snapshot on a fixed interval and publishes it on the
bus so exporters and other consumers do not have to probe on their own.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ...core.aggregator import StatusAggregator
from ...core.contracts import BaseModule, HealthStatus, ModuleConfig, Snapshot

logger = logging.getLogger(__name__)


class StatusPoller(BaseModule):
    name = "modules.status.status_poller"

    def __init__(self, *, aggregator: StatusAggregator) -> None:
        super().__init__()
        self._aggregator = aggregator
        self._interval = 10.0
        self._topic = "status.snapshot"
        self._task: asyncio.Task[None] | None = None
        self._last_snapshot: Snapshot | None = None
        self._published = 0

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._interval = float(options.get("interval_seconds", self._interval))
        self._topic = options.get("topic", self._topic)

    @property
    def last_snapshot(self) -> Snapshot | None:
        return self._last_snapshot

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"{self.name}-loop")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def poll_once(self) -> Snapshot:
        snapshot = await self._aggregator.snapshot()
        self._last_snapshot = snapshot
        await self.bus.publish(self._topic, snapshot)
        self._published += 1
        return snapshot

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Status poll failed")
            await asyncio.sleep(self._interval)

    async def health(self) -> HealthStatus:
        details = {"published": self._published, "interval_seconds": self._interval}
        if self._last_snapshot is not None:
            details["last_snapshot"] = self._last_snapshot.timestamp.isoformat()
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details=details)


__all__ = ["StatusPoller"]
