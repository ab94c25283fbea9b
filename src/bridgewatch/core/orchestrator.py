"""
Lifecycle coordinator for bridgewatch modules.

Modules are attached to the shared bus and configured on registration,
started in registration order and stopped in reverse. While running, a
:class:`HealthSummary` is published periodically for bus consumers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .bus import EventBus
from .contracts import BaseModule, HealthStatus, HealthSummary, ModuleConfig

logger = logging.getLogger(__name__)

_SEVERITY = {"healthy": 0, "degraded": 1, "error": 2}


def overall_status(reports: dict[str, HealthStatus]) -> str:
    """Worst status across ``reports``; unknown labels count as degraded."""
    worst = max((_SEVERITY.get(report.status, 1) for report in reports.values()), default=0)
    return next(label for label, rank in _SEVERITY.items() if rank == worst)


class Orchestrator:
    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        health_interval: float = 10.0,
        publish_health: bool = True,
        health_topic: str = "status.health.summary",
    ) -> None:
        self.bus = bus or EventBus()
        self._modules: dict[str, BaseModule] = {}
        self._running: list[BaseModule] = []
        self._active = False
        self._health_interval = health_interval
        self._publish_health = publish_health
        self._health_topic = health_topic
        self._health_task: asyncio.Task[None] | None = None

    @property
    def modules(self) -> list[BaseModule]:
        return list(self._modules.values())

    @property
    def running(self) -> bool:
        return self._active

    def module(self, name: str) -> BaseModule | None:
        return self._modules.get(name)

    async def add_module(self, module: BaseModule, config: ModuleConfig | None = None) -> None:
        if module.name in self._modules:
            raise ValueError(f"Module {module.name} is already registered")
        module.set_bus(self.bus)
        await module.configure(config or ModuleConfig())
        self._modules[module.name] = module
        logger.info("Registered module %s", module.name)

    async def start(self) -> None:
        """
        Start the bus, then every module.

        A module that fails to start rolls back the ones already running and
        the error propagates to the caller.
        """
        if self._active:
            logger.warning("Orchestrator already running.")
            return
        await self.bus.start()
        for module in self._modules.values():
            logger.info("Starting module %s", module.name)
            try:
                await module.start()
            except Exception:
                logger.exception("Module %s failed to start; rolling back.", module.name)
                await self._shutdown()
                raise
            self._running.append(module)
        self._active = True
        if self._publish_health:
            self._health_task = asyncio.create_task(self._health_loop(), name="bridgewatch-health")
        logger.info("Orchestrator started %d modules.", len(self._running))

    async def stop(self) -> None:
        if not self._active:
            logger.warning("Orchestrator stop requested while not running.")
            return
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        self._active = False
        await self._shutdown()
        logger.info("Orchestrator stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Query every registered module concurrently."""
        names = list(self._modules)
        results = await asyncio.gather(
            *(self._modules[name].health() for name in names), return_exceptions=True
        )
        reports: dict[str, HealthStatus] = {}
        for name, result in zip(names, results, strict=True):
            if isinstance(result, HealthStatus):
                reports[name] = result
                continue
            logger.error("Health check for %s failed: %r", name, result)
            reports[name] = HealthStatus(status="error", details={"error": str(result)})
        return reports

    async def _shutdown(self) -> None:
        while self._running:
            module = self._running.pop()
            logger.info("Stopping module %s", module.name)
            try:
                await module.stop()
            except Exception:
                logger.exception("Module %s failed to stop cleanly.", module.name)
        await self.bus.stop()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            reports = await self.health()
            summary = HealthSummary(status=overall_status(reports), modules=reports)
            await self.bus.publish(self._health_topic, summary)


__all__ = ["Orchestrator", "overall_status"]
