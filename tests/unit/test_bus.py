import asyncio

import pytest

from bridgewatch.core.bus import EventBus
from bridgewatch.core.contracts import BusStatus, MotionEvent


@pytest.mark.asyncio
async def test_publish_and_subscribe_round_trip() -> None:
    bus = EventBus(queue_size=8)
    await bus.start()

    received = asyncio.Event()
    payloads: list[MotionEvent] = []

    async def handler(topic: str, payload: MotionEvent) -> None:
        payloads.append(payload)
        received.set()

    bus.subscribe("telemetry.motion", handler)

    await bus.publish("telemetry.motion", MotionEvent(device="front"))
    await asyncio.wait_for(received.wait(), timeout=0.2)

    await bus.stop()

    assert payloads and payloads[0].device == "front"
    assert payloads[0].state == "on"


@pytest.mark.asyncio
async def test_unsubscribed_handler_receives_nothing() -> None:
    bus = EventBus(queue_size=8, telemetry_enabled=False)
    await bus.start()

    calls: list[str] = []

    async def handler(topic: str, payload: MotionEvent) -> None:
        calls.append(topic)

    subscription = bus.subscribe("telemetry.motion", handler)
    bus.unsubscribe(subscription)
    await bus.publish("telemetry.motion", MotionEvent(device="front"))
    await asyncio.sleep(0.05)
    await bus.stop()

    assert calls == []
    assert bus.status().processed_total == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_siblings() -> None:
    bus = EventBus(queue_size=8, telemetry_enabled=False)
    await bus.start()

    received = asyncio.Event()

    async def broken(topic: str, payload: MotionEvent) -> None:
        raise RuntimeError("boom")

    async def healthy(topic: str, payload: MotionEvent) -> None:
        received.set()

    bus.subscribe("telemetry.motion", broken)
    bus.subscribe("telemetry.motion", healthy)
    await bus.publish("telemetry.motion", MotionEvent(device="front"))
    await asyncio.wait_for(received.wait(), timeout=0.2)
    await bus.stop()


@pytest.mark.asyncio
async def test_bus_emits_status_telemetry() -> None:
    bus = EventBus(queue_size=4, telemetry_interval=0.01)
    await bus.start()

    statuses: list[BusStatus] = []
    received = asyncio.Event()

    async def handler(topic: str, payload: BusStatus) -> None:
        statuses.append(payload)
        received.set()

    bus.subscribe("status.bus", handler)
    await asyncio.wait_for(received.wait(), timeout=0.5)
    await bus.stop()

    assert statuses
    assert statuses[0].queue_capacity == 4


@pytest.mark.asyncio
async def test_full_queue_discards_oldest_payload() -> None:
    bus = EventBus(queue_size=2, telemetry_enabled=False)
    seen: list[str] = []

    def handler(topic: str, payload: MotionEvent) -> None:
        seen.append(payload.device)

    bus.subscribe("telemetry.motion", handler)
    for device in ("a", "b", "c"):
        await bus.publish("telemetry.motion", MotionEvent(device=device))

    assert bus.status().dropped_total == 1
    assert bus.status().watermark == "critical"

    await bus.start()
    for _ in range(20):
        if len(seen) == 2:
            break
        await asyncio.sleep(0.01)
    await bus.stop()

    assert seen == ["b", "c"]
    assert bus.status().processed_total == 2


def test_queue_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventBus(queue_size=0)
