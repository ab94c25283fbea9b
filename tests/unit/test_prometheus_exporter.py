import asyncio

import pytest
from prometheus_client import CollectorRegistry

from bridgewatch.core.bus import EventBus
from bridgewatch.core.contracts import (
    BrokerStatus,
    BusStatus,
    DeviceRow,
    ModuleConfig,
    MotionEvent,
    ServiceStatus,
    Snapshot,
    StreamEndpoints,
)
from bridgewatch.core.history import MotionEventLog
from bridgewatch.modules.status.prometheus_exporter import PrometheusExporter


class FakeServer:
    def __init__(self) -> None:
        self.shutdown_called = False

    def shutdown(self) -> None:
        self.shutdown_called = True


def _row(name: str, **overrides) -> DeviceRow:
    streams = StreamEndpoints(
        name=name,
        high=f"rtsp://10.0.0.2:18554/{name}",
        low=f"rtsp://10.0.0.2:18554/{name}_sub",
        neolink_high=f"rtsp://10.0.0.2:8554/{name}/main",
        neolink_low=f"rtsp://10.0.0.2:8554/{name}/sub",
    )
    return DeviceRow(name=name, onvif_port=8001, streams=streams, **overrides)


async def _start_exporter(registry: CollectorRegistry, **kwargs):
    started: dict[str, object] = {}
    server = FakeServer()

    def factory(port: int, addr: str, _registry: CollectorRegistry) -> FakeServer:
        started["port"] = port
        started["addr"] = addr
        started["registry"] = _registry
        return server

    bus = EventBus(telemetry_enabled=False)
    await bus.start()
    module = PrometheusExporter(registry=registry, server_factory=factory, **kwargs)
    module.set_bus(bus)
    await module.configure(ModuleConfig(options={"port": 9999, "addr": "127.0.0.1"}))
    await module.start()
    return bus, module, started, server


@pytest.mark.asyncio
async def test_prometheus_exporter_tracks_bus_status() -> None:
    registry = CollectorRegistry()
    bus, module, started, server = await _start_exporter(registry)

    await bus.publish(
        "status.bus",
        BusStatus(
            queue_depth=1,
            queue_capacity=8,
            subscriber_count=1,
            topic_count=1,
            published_total=5,
            processed_total=4,
            dropped_total=0,
            lag_seconds=0.1,
            watermark="normal",
        ),
    )
    await asyncio.sleep(0.05)

    await module.stop()
    await bus.stop()

    assert started["port"] == 9999
    assert server.shutdown_called is True
    assert registry.get_sample_value("bridgewatch_bus_queue_depth") == 1
    assert registry.get_sample_value("bridgewatch_bus_lag_seconds") == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_prometheus_exporter_tracks_snapshots() -> None:
    registry = CollectorRegistry()
    motion_log = MotionEventLog()
    motion_log.append(MotionEvent(device="front"))
    bus, module, _started, _server = await _start_exporter(registry, motion_log=motion_log)

    snapshot = Snapshot(
        host_ip="10.0.0.2",
        services={
            "neolink": ServiceStatus(running=True, port=8554),
            "go2rtc": ServiceStatus(running=False, port=18554),
        },
        broker=BrokerStatus(running=True, available=True, host="broker", port=1883),
        devices=[
            _row("front", motion="on", streaming=True),
            _row("garden", battery=64, motion="unknown"),
        ],
    )
    await bus.publish("status.snapshot", snapshot)
    await asyncio.sleep(0.05)

    def sample(name: str, **labels: str) -> float | None:
        return registry.get_sample_value(name, labels or None)

    assert sample("bridgewatch_service_up", service="neolink") == 1
    assert sample("bridgewatch_service_up", service="go2rtc") == 0
    assert sample("bridgewatch_broker_connected") == 1
    assert sample("bridgewatch_devices") == 2
    assert sample("bridgewatch_device_motion", device="front") == 1
    assert sample("bridgewatch_device_motion", device="garden") == -1
    assert sample("bridgewatch_device_streaming", device="front") == 1
    assert sample("bridgewatch_device_battery_percent", device="garden") == 64
    assert sample("bridgewatch_device_battery_percent", device="front") is None
    assert sample("bridgewatch_motion_events_buffered") == 1

    await bus.publish(
        "status.snapshot",
        Snapshot(host_ip="10.0.0.2", devices=[_row("front")]),
    )
    await asyncio.sleep(0.05)
    await module.stop()
    await bus.stop()

    assert sample("bridgewatch_device_motion", device="garden") is None
    assert sample("bridgewatch_service_up", service="neolink") is None
    assert sample("bridgewatch_broker_connected") == 0


@pytest.mark.asyncio
async def test_battery_gauge_is_cleared_when_level_becomes_unknown() -> None:
    registry = CollectorRegistry()
    bus, module, _started, _server = await _start_exporter(registry)

    await bus.publish("status.snapshot", Snapshot(host_ip="10.0.0.2", devices=[_row("garden", battery=80)]))
    await asyncio.sleep(0.05)
    assert registry.get_sample_value("bridgewatch_device_battery_percent", {"device": "garden"}) == 80

    await bus.publish("status.snapshot", Snapshot(host_ip="10.0.0.2", devices=[_row("garden")]))
    await asyncio.sleep(0.05)
    await module.stop()
    await bus.stop()

    assert registry.get_sample_value("bridgewatch_device_battery_percent", {"device": "garden"}) is None
    assert registry.get_sample_value("bridgewatch_device_motion", {"device": "garden"}) == -1
