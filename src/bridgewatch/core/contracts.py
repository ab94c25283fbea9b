"""
Contracts and payload schemas shared by the bridgewatch components.

Everything that crosses a component boundary (bus payloads, store entries,
the status snapshot) is a frozen pydantic model so readers can hold on to a
value without worrying about concurrent writers mutating it underneath them.
"""

from __future__ import annotations

import abc
import datetime as dt
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

MotionValue = Literal["on", "off", "unknown"]


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.UTC)


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="allow", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class DeviceState(BaseModel):
    """Last-known derived state of one device, as inferred from telemetry."""

    model_config = ConfigDict(frozen=True)

    battery: int | None = Field(default=None, ge=0, le=100, description="Battery level in percent.")
    motion: MotionValue = Field(default="unknown")
    last_seen: dt.datetime | None = Field(
        default=None, description="When the device last published anything."
    )


class MotionEvent(BasePayload):
    """A device entering the motion `on` state."""

    timestamp: dt.datetime = Field(default_factory=utc_now)
    device: str
    state: Literal["on"] = Field(default="on")


class LogLine(BaseModel):
    """One diagnostic message mirrored into the in-memory log buffer."""

    model_config = ConfigDict(frozen=True)

    timestamp: dt.datetime = Field(default_factory=utc_now)
    level: str
    logger: str = Field(default="root")
    message: str


class ServiceStatus(BaseModel):
    """Liveness of one monitored downstream service."""

    model_config = ConfigDict(frozen=True)

    running: bool
    host: str | None = Field(default=None)
    port: int | None = Field(default=None)
    api_port: int | None = Field(default=None)
    api_running: bool | None = Field(default=None)
    probed: bool = Field(
        default=True,
        description="False when no probe was attempted (nothing to probe), as opposed to a failed probe.",
    )


class BrokerStatus(BaseModel):
    """Message broker connection as observed by the telemetry bridge."""

    model_config = ConfigDict(frozen=True)

    running: bool = Field(default=False, description="Live connection flag.")
    available: bool = Field(default=False, description="Whether broker settings exist at all.")
    host: str | None = Field(default=None)
    port: int | None = Field(default=None)
    ssl: bool = Field(default=False)


class StreamEndpoints(BaseModel):
    """RTSP URLs under which a device is republished."""

    model_config = ConfigDict(frozen=True)

    name: str
    high: str
    low: str
    neolink_high: str
    neolink_low: str


class DeviceRow(BaseModel):
    """Per-device row of a status snapshot."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: str | None = Field(default=None, description="Statically declared device address.")
    ip_mode: Literal["static", "dynamic"] = Field(default="static")
    onvif_ip: str | None = Field(default=None, description="Resolved management address.")
    onvif_port: int
    onvif_url: str | None = Field(default=None)
    is_battery: bool = Field(default=False)
    enable_motion: bool = Field(default=False)
    enable_battery: bool = Field(default=False)
    battery: int | None = Field(default=None, ge=0, le=100)
    motion: MotionValue = Field(default="unknown")
    last_seen: dt.datetime | None = Field(default=None)
    streaming: bool = Field(default=False)
    streams: StreamEndpoints


class Snapshot(BasePayload):
    """
    Point-in-time composition produced by the status aggregator.

    Each field is individually consistent; the snapshot as a whole is not a
    single atomic read across all stores.
    """

    host_ip: str
    services: Mapping[str, ServiceStatus] = Field(default_factory=dict)
    broker: BrokerStatus = Field(default_factory=BrokerStatus)
    devices: tuple[DeviceRow, ...] = Field(default=())
    timestamp: dt.datetime = Field(default_factory=utc_now)

    @field_validator("services", mode="after")
    @classmethod
    def _freeze_services(cls, value: Mapping[str, ServiceStatus]) -> Mapping[str, ServiceStatus]:
        return MappingProxyType(dict(value))

    @field_serializer("services")
    def _dump_services(self, value: Mapping[str, ServiceStatus]) -> dict[str, ServiceStatus]:
        return dict(value)

    @property
    def mqtt_connected(self) -> bool:
        return self.broker.running


class BusStatus(BasePayload):
    """Counters the event bus reports about itself on ``status.bus``."""

    queue_depth: int = Field(ge=0)
    queue_capacity: int = Field(gt=0)
    subscriber_count: int = Field(ge=0)
    topic_count: int = Field(ge=0)
    published_total: int = Field(ge=0)
    processed_total: int = Field(ge=0, description="Payloads handed to at least one handler.")
    dropped_total: int = Field(
        ge=0, description="Payloads discarded because the queue was full or the bus stopped."
    )
    lag_seconds: float = Field(
        ge=0.0, description="Queueing delay of the most recently dispatched payload."
    )
    watermark: Literal["normal", "high", "critical"] = "normal"


class HealthStatus(BaseModel):
    """One module's answer to a health query."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="healthy, degraded or error.")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BasePayload):
    """Every module's health plus the worst status among them."""

    status: str
    modules: dict[str, HealthStatus] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Per-module switch and free-form options derived from daemon settings."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    options: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class ConnectionStateSource(Protocol):
    """Anything that can report whether the broker connection is up."""

    @property
    def connected(self) -> bool: ...


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Lifecycle contract for the components the orchestrator runs.

    The orchestrator attaches the shared bus, calls :meth:`configure` once
    with the module's options, then :meth:`start`; :meth:`stop` is called in
    reverse registration order on shutdown. Subclasses set ``name`` to the
    dotted key used for their settings section.
    """

    name: str

    def __init__(self) -> None:
        self._bus: EventBus | None = None
        self._config = ModuleConfig()
        self._configured = False

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.name} is not attached to an event bus")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None: ...

    async def stop(self) -> None:
        return None

    async def health(self) -> HealthStatus:
        if not self._configured:
            return HealthStatus(status="degraded", details={"reason": "not configured"})
        return HealthStatus(status="healthy")
