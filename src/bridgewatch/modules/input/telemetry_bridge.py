"""
Bridge between the MQTT broker and the in-memory device state.

One long-lived task owns the broker connection and feeds received messages
into a bounded queue; a single consumer task drains that queue and applies
each message to the state store in arrival order. The connection is
re-established on a fixed interval after any broker error.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import re
import ssl
import threading
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from typing import Any

import aiomqtt

from ...core.config import BrokerSettings, ConfigStore, DeviceConfig
from ...core.contracts import BaseModule, HealthStatus, ModuleConfig, MotionEvent, utc_now
from ...core.history import MotionEventLog
from ...core.state import DeviceStateStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., AbstractAsyncContextManager[Any]]


class ConnectionState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _default_client_factory(
    broker: BrokerSettings, *, identifier: str, timeout: float
) -> aiomqtt.Client:
    tls_context = ssl.create_default_context() if broker.ssl else None
    return aiomqtt.Client(
        broker.host,
        port=broker.port,
        username=broker.username,
        password=broker.password,
        identifier=identifier,
        timeout=timeout,
        tls_context=tls_context,
    )


def discovery_messages(
    devices: Iterable[DeviceConfig],
    *,
    namespace: str = "neolink",
    discovery_prefix: str = "homeassistant",
) -> list[tuple[str, str]]:
    """
    Build the retained auto-discovery announcements for ``devices``.

    Bodies are serialised with sorted keys so announcing the same device
    list twice yields byte-identical payloads.
    """
    messages: list[tuple[str, str]] = []
    for device in devices:
        name = device.name
        device_block = {
            "identifiers": [f"reolink_{name}"],
            "name": f"Reolink {name}",
            "manufacturer": "Reolink",
            "model": "IP Camera",
        }
        if device.has_motion_sensor:
            body = {
                "name": f"{name} Motion",
                "state_topic": f"{namespace}/{name}/status/motion",
                "payload_on": "on",
                "payload_off": "off",
                "device_class": "motion",
                "unique_id": f"reolink_{name}_motion",
                "device": device_block,
            }
            messages.append(
                (
                    f"{discovery_prefix}/binary_sensor/{name}_motion/config",
                    json.dumps(body, sort_keys=True),
                )
            )
        if device.has_battery:
            body = {
                "name": f"{name} Battery",
                "state_topic": f"{namespace}/{name}/status/battery_level",
                "unit_of_measurement": "%",
                "device_class": "battery",
                "unique_id": f"reolink_{name}_battery",
                "device": device_block,
            }
            messages.append(
                (
                    f"{discovery_prefix}/sensor/{name}_battery/config",
                    json.dumps(body, sort_keys=True),
                )
            )
    return messages


_DECIMAL = re.compile(r"[+-]?[0-9]+")


def parse_battery_level(payload: str) -> int | None:
    """Percent in 0..100, or ``None`` for anything else."""
    text = payload.strip()
    if not _DECIMAL.fullmatch(text):
        return None
    level = int(text, 10)
    return level if 0 <= level <= 100 else None


class TelemetryBridge(BaseModule):
    """Subscribe to device status topics and keep the state store current."""

    name = "modules.input.telemetry_bridge"

    def __init__(
        self,
        *,
        device_states: DeviceStateStore,
        motion_log: MotionEventLog,
        config_store: ConfigStore | None = None,
        broker_loader: Callable[[], BrokerSettings | None] | None = None,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        super().__init__()
        self._device_states = device_states
        self._motion_log = motion_log
        self._config_store = config_store
        self._broker_loader = broker_loader
        self._client_factory = client_factory or _default_client_factory
        self._clock = clock
        self._namespace = "neolink"
        self._discovery_prefix = "homeassistant"
        self._client_id = "reolink-dashboard"
        self._reconnect_interval = 5.0
        self._connect_timeout = 10.0
        self._queue_size = 1000
        self._motion_topic = "telemetry.motion"
        self._topic_pattern = self._compile_pattern(self._namespace)
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._broker: BrokerSettings | None = None
        self._queue: asyncio.Queue[tuple[str, bytes | str]] | None = None
        self._connection_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._messages_handled = 0
        self._connect_count = 0
        self._last_error: str | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._namespace = str(options.get("namespace", self._namespace))
        self._discovery_prefix = str(options.get("discovery_prefix", self._discovery_prefix))
        self._client_id = str(options.get("client_id", self._client_id))
        self._reconnect_interval = float(options.get("reconnect_interval", self._reconnect_interval))
        self._connect_timeout = float(options.get("connect_timeout", self._connect_timeout))
        self._queue_size = int(options.get("queue_size", self._queue_size))
        self._motion_topic = str(options.get("motion_topic", self._motion_topic))
        self._topic_pattern = self._compile_pattern(self._namespace)

    @staticmethod
    def _compile_pattern(namespace: str) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(namespace)}/([^/]+)/status/(motion|battery_level)$")

    @property
    def connection_state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> tuple[str, str]:
        return (
            f"{self._namespace}/+/status/motion",
            f"{self._namespace}/+/status/battery_level",
        )

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous is not state:
            logger.debug("Broker connection %s -> %s", previous, state)

    async def start(self) -> None:
        self._broker = self._broker_loader() if self._broker_loader else None
        if self._broker is None:
            logger.info("No broker configured; motion and battery telemetry disabled.")
            return
        self._stopping.clear()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._consumer_task = asyncio.create_task(self._consume(), name=f"{self.name}-consumer")
        self._connection_task = asyncio.create_task(
            self._run_connection(self._broker), name=f"{self.name}-connection"
        )

    async def stop(self) -> None:
        self._stopping.set()
        for attr in ("_connection_task", "_consumer_task"):
            task: asyncio.Task[None] | None = getattr(self, attr)
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            setattr(self, attr, None)
        self._queue = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def health(self) -> HealthStatus:
        details: dict[str, Any] = {
            "state": self.connection_state.value,
            "broker_configured": self._broker is not None,
            "messages_handled": self._messages_handled,
            "connects": self._connect_count,
        }
        if self._last_error:
            details["last_error"] = self._last_error
        if self._broker is not None and not self.connected:
            return HealthStatus(status="degraded", details=details)
        return HealthStatus(status="healthy", details=details)

    async def _run_connection(self, broker: BrokerSettings) -> None:
        while not self._stopping.is_set():
            self._set_state(ConnectionState.CONNECTING)
            logger.info("Connecting to MQTT broker %s:%s", broker.host, broker.port)
            try:
                async with self._client_factory(
                    broker, identifier=self._client_id, timeout=self._connect_timeout
                ) as client:
                    self._set_state(ConnectionState.CONNECTED)
                    self._connect_count += 1
                    self._last_error = None
                    logger.info("MQTT connected to %s:%s", broker.host, broker.port)
                    await self._on_connected(client)
                    async for message in client.messages:
                        await self._enqueue(message.topic.value, message.payload)
            except aiomqtt.MqttError as exc:
                self._last_error = str(exc)
                logger.warning("MQTT error %s; retrying in %.0fs", exc, self._reconnect_interval)
            except Exception as exc:
                self._last_error = str(exc)
                logger.exception("Unhandled telemetry connection error")
            finally:
                self._set_state(ConnectionState.DISCONNECTED)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._reconnect_interval)

    async def _on_connected(self, client: Any) -> None:
        for topic in self.subscriptions:
            await client.subscribe(topic)
        devices: tuple[Any, ...] = ()
        if self._config_store is not None:
            try:
                devices = self._config_store.load().devices
            except Exception:
                logger.warning("Options unreadable; skipping discovery", exc_info=True)
        for topic, body in discovery_messages(
            devices, namespace=self._namespace, discovery_prefix=self._discovery_prefix
        ):
            await client.publish(topic, body, retain=True)

    async def _enqueue(self, topic: str, payload: bytes | str) -> None:
        if self._queue is None:
            return
        if self._queue.full():
            logger.warning("Telemetry queue is full; broker reader will wait for free space.")
        await self._queue.put((topic, payload))

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            topic, payload = await queue.get()
            try:
                await self.handle_message(topic, payload)
            except Exception:
                logger.exception("Failed to apply telemetry message on %s", topic)
            finally:
                queue.task_done()

    async def handle_message(self, topic: str, payload: bytes | str | None) -> bool:
        """
        Apply one broker message to the device state.

        Returns ``False`` for topics that are not device status topics.
        """
        match = self._topic_pattern.match(topic)
        if match is None:
            return False
        device, kind = match.groups()
        if isinstance(payload, bytes | bytearray):
            text = bytes(payload).decode("utf-8", errors="replace")
        else:
            text = payload or ""
        now = self._clock()
        self._messages_handled += 1
        if kind == "battery_level":
            level = parse_battery_level(text)
            if level is None:
                logger.debug("Unparseable battery level %r from %s", text, device)
            self._device_states.record_battery(device, level, at=now)
            return True
        motion_on = text == "on"
        self._device_states.record_motion(device, "on" if motion_on else "off", at=now)
        if motion_on:
            event = MotionEvent(timestamp=now, device=device)
            self._motion_log.append(event)
            logger.info("Motion ON: %s", device)
            if self._bus is not None:
                await self._bus.publish(self._motion_topic, event)
        return True


__all__ = [
    "ConnectionState",
    "TelemetryBridge",
    "discovery_messages",
    "parse_battery_level",
]
