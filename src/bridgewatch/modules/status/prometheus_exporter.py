"""
Expose the status view via Prometheus.

The exporter subscribes to `status.snapshot` and `status.bus` updates and
renders them as gauges: liveness per monitored service, the broker
connection, per-device battery/motion/streaming, ring buffer fill levels
and the bus' own queue telemetry.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import BaseModule, BusStatus, ModuleConfig, Snapshot
from ...core.history import MessageLog, MotionEventLog

logger = logging.getLogger(__name__)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


_MOTION_VALUES = {"on": 1.0, "off": 0.0, "unknown": -1.0}


class PrometheusExporter(BaseModule):
    """Status module that exports snapshots and bus telemetry via HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
        motion_log: MotionEventLog | None = None,
        message_log: MessageLog | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._motion_log = motion_log
        self._message_log = message_log
        self._bus_topic = "status.bus"
        self._snapshot_topic = "status.snapshot"
        self._port = 9093
        self._addr = "127.0.0.1"
        self._subscriptions: list[Subscription] = []
        self._known_services: set[str] = set()
        self._known_devices: set[str] = set()
        self._service_up = Gauge(
            "bridgewatch_service_up",
            "Whether the monitored service accepted a TCP connection (1) or not (0).",
            ["service"],
            registry=self._registry,
        )
        self._broker_connected = Gauge(
            "bridgewatch_broker_connected",
            "Whether the telemetry bridge is connected to the broker.",
            registry=self._registry,
        )
        self._device_battery = Gauge(
            "bridgewatch_device_battery_percent",
            "Last reported battery level per device.",
            ["device"],
            registry=self._registry,
        )
        self._device_motion = Gauge(
            "bridgewatch_device_motion",
            "Motion state per device (1 on, 0 off, -1 unknown).",
            ["device"],
            registry=self._registry,
        )
        self._device_streaming = Gauge(
            "bridgewatch_device_streaming",
            "Whether the restream server reports consumers for the device.",
            ["device"],
            registry=self._registry,
        )
        self._devices_total = Gauge(
            "bridgewatch_devices",
            "Number of declared devices.",
            registry=self._registry,
        )
        self._motion_buffered = Gauge(
            "bridgewatch_motion_events_buffered",
            "Motion events currently held in the history buffer.",
            registry=self._registry,
        )
        self._log_buffered = Gauge(
            "bridgewatch_log_lines_buffered",
            "Log lines currently held in the history buffer.",
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "bridgewatch_bus_queue_depth",
            "Number of events currently waiting on the bus.",
            registry=self._registry,
        )
        self._lag_seconds = Gauge(
            "bridgewatch_bus_lag_seconds",
            "Event dispatch lag in seconds.",
            registry=self._registry,
        )
        self._dropped_total = Gauge(
            "bridgewatch_bus_dropped_total",
            "Total dropped events.",
            registry=self._registry,
        )

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._bus_topic = options.get("bus_topic", self._bus_topic)
        self._snapshot_topic = options.get("snapshot_topic", self._snapshot_topic)

    async def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        self._subscriptions = [
            self.bus.subscribe(self._bus_topic, self._handle_bus_status),
            self.bus.subscribe(self._snapshot_topic, self._handle_snapshot),
        ]

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        server = self._server
        # start_http_server returns (server, thread) on current releases.
        if isinstance(server, tuple) and server:
            server = server[0]
        shutdown = getattr(server, "shutdown", None)
        if callable(shutdown):
            shutdown()
        close = getattr(server, "server_close", None)
        if callable(close):
            close()
        self._server = None

    async def _handle_bus_status(self, topic: str, payload: BusStatus) -> None:
        if not isinstance(payload, BusStatus):
            return
        self._queue_depth.set(payload.queue_depth)
        self._lag_seconds.set(payload.lag_seconds)
        self._dropped_total.set(payload.dropped_total)

    async def _handle_snapshot(self, topic: str, payload: Snapshot) -> None:
        if not isinstance(payload, Snapshot):
            return
        services = set(payload.services)
        for name in self._known_services - services:
            self._service_up.remove(name)
        for name, status in payload.services.items():
            self._service_up.labels(service=name).set(1.0 if status.running else 0.0)
        self._known_services = services

        self._broker_connected.set(1.0 if payload.mqtt_connected else 0.0)
        self._devices_total.set(len(payload.devices))

        devices = {row.name for row in payload.devices}
        for name in self._known_devices - devices:
            for gauge in (self._device_battery, self._device_motion, self._device_streaming):
                try:
                    gauge.remove(name)
                except KeyError:
                    continue
        for row in payload.devices:
            if row.battery is not None:
                self._device_battery.labels(device=row.name).set(row.battery)
            else:
                with contextlib.suppress(KeyError):
                    self._device_battery.remove(row.name)
            self._device_motion.labels(device=row.name).set(_MOTION_VALUES[row.motion])
            self._device_streaming.labels(device=row.name).set(1.0 if row.streaming else 0.0)
        self._known_devices = devices

        if self._motion_log is not None:
            self._motion_buffered.set(len(self._motion_log))
        if self._message_log is not None:
            self._log_buffered.set(len(self._message_log))


__all__ = ["PrometheusExporter"]
