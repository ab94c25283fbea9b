"""
Assembly of the status snapshot.

Every call re-reads the declarative document and the externally written
tables, probes all monitored ports concurrently, and merges the results with
the live telemetry state. Nothing in here raises to the caller: each
collaborator failure degrades its own field to ``False``/``None``/empty.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .addresses import AddressResolver, AddressTable
from .config import (
    BrokerSettings,
    ConfigDocument,
    ConfigStore,
    DaemonSettings,
    DeviceConfig,
    PortTableStore,
    load_broker_settings,
)
from .contracts import (
    BrokerStatus,
    ConnectionStateSource,
    DeviceRow,
    ServiceStatus,
    Snapshot,
    StreamEndpoints,
    utc_now,
)
from .host import FALLBACK_ADDRESS, detect_host_ip
from .probe import LivenessProber
from .state import DeviceStateStore
from .streams import StreamIntrospector

logger = logging.getLogger(__name__)

ONVIF_SERVICE = "onvif"
DASHBOARD_SERVICE = "dashboard"


T = TypeVar("T")


def build_stream_endpoints(
    host_ip: str, name: str, restream_port: int | None, relay_port: int | None
) -> StreamEndpoints:
    def _url(port: int | None, path: str) -> str:
        authority = f"{host_ip}:{port}" if port else host_ip
        return f"rtsp://{authority}/{path}"

    return StreamEndpoints(
        name=name,
        high=_url(restream_port, name),
        low=_url(restream_port, f"{name}_sub"),
        neolink_high=_url(relay_port, f"{name}/main"),
        neolink_low=_url(relay_port, f"{name}/sub"),
    )


def _load_or_default(label: str, loader: Callable[[], T], default: Callable[[], T]) -> T:
    try:
        return loader()
    except Exception:
        logger.warning("Reading the %s failed; using an empty default", label, exc_info=True)
        return default()


class StatusAggregator:
    """Produce one :class:`Snapshot` per call from all status sources."""

    def __init__(
        self,
        *,
        settings: DaemonSettings,
        device_states: DeviceStateStore,
        prober: LivenessProber | None = None,
        config_store: ConfigStore | None = None,
        address_resolver: AddressResolver | None = None,
        port_table: PortTableStore | None = None,
        connection: ConnectionStateSource | None = None,
        stream_introspector: StreamIntrospector | None = None,
        host_detector: Callable[[str], str] = detect_host_ip,
        broker_loader: Callable[[], BrokerSettings | None] | None = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        paths = settings.paths
        self._settings = settings
        self._device_states = device_states
        self._prober = prober or LivenessProber(default_timeout=settings.probe.timeout_seconds)
        self._config_store = config_store or ConfigStore(paths.options_file)
        self._address_resolver = address_resolver or AddressResolver(paths.address_table)
        self._port_table = port_table or PortTableStore(paths.ports_file)
        self._connection = connection
        self._stream_introspector = stream_introspector
        self._host_detector = host_detector
        self._broker_loader = broker_loader or (
            lambda: load_broker_settings(settings.telemetry, paths.broker_file)
        )
        self._clock = clock

    @property
    def config_store(self) -> ConfigStore:
        return self._config_store

    def attach_connection(self, connection: ConnectionStateSource) -> None:
        self._connection = connection

    async def snapshot(self) -> Snapshot:
        try:
            return await self._build_snapshot()
        except Exception:
            logger.exception("Snapshot assembly failed; returning a degraded snapshot")
            return Snapshot(
                host_ip=FALLBACK_ADDRESS,
                broker=BrokerStatus(running=self._is_connected()),
                timestamp=self._clock(),
            )

    async def _build_snapshot(self) -> Snapshot:
        document, table, ports = self._read_sources()
        host_ip = self._detect_host(document)
        devices = document.devices

        service_ports = {
            target.name: target.resolved_ports(ports) for target in self._settings.services
        }
        jobs: dict[str, Awaitable[bool]] = {}
        for target in self._settings.services:
            port, api_port = service_ports[target.name]
            jobs[target.name] = self._prober.probe(target.host, port)
            if api_port:
                jobs[f"{target.name}:api"] = self._prober.probe(target.host, api_port)

        onvif_base = ports.get(self._settings.onvif.port_key, self._settings.onvif.base_port)
        management_ip = table.resolve(devices[0]) if devices else None
        if management_ip:
            jobs[ONVIF_SERVICE] = self._prober.probe(management_ip, onvif_base)

        names = list(jobs)
        *outcomes, active_streams = await asyncio.gather(
            *jobs.values(), self._active_streams(service_ports)
        )
        results = dict(zip(names, outcomes, strict=True))

        services: dict[str, ServiceStatus] = {}
        for target in self._settings.services:
            port, api_port = service_ports[target.name]
            services[target.name] = ServiceStatus(
                running=results[target.name],
                host=target.host,
                port=port,
                api_port=api_port,
                api_running=results.get(f"{target.name}:api") if api_port else None,
            )
        services[ONVIF_SERVICE] = ServiceStatus(
            running=results.get(ONVIF_SERVICE, False),
            host=management_ip,
            port=onvif_base,
            probed=ONVIF_SERVICE in results,
        )
        services[DASHBOARD_SERVICE] = ServiceStatus(
            running=True,
            port=ports.get(self._settings.status_api.port_key, self._settings.status_api.port),
        )

        rows = [
            self._device_row(index, device, table, host_ip, onvif_base, service_ports, active_streams)
            for index, device in enumerate(devices)
        ]
        return Snapshot(
            host_ip=host_ip,
            services=services,
            broker=self._broker_status(),
            devices=rows,
            timestamp=self._clock(),
        )

    def stream_endpoints(self) -> list[StreamEndpoints]:
        """Stream URLs for every declared device; no probing involved."""
        document, _table, ports = self._read_sources()
        host_ip = self._detect_host(document)
        service_ports = {
            target.name: target.resolved_ports(ports) for target in self._settings.services
        }
        restream_port, relay_port = self._stream_ports(service_ports)
        return [
            build_stream_endpoints(host_ip, device.name, restream_port, relay_port)
            for device in document.devices
        ]

    def config_view(self) -> dict[str, Any]:
        """Redacted, operator-facing rendition of the declarative document."""
        document, _table, ports = self._read_sources()
        onvif_base = ports.get(self._settings.onvif.port_key, self._settings.onvif.base_port)
        service_ports = {
            target.name: target.resolved_ports(ports) for target in self._settings.services
        }
        restream_port, relay_port = self._stream_ports(service_ports)
        view = document.redacted()
        view["neolink_port"] = relay_port
        view["go2rtc_port"] = restream_port
        view["cameras"] = [
            {
                "name": device.name,
                "address": device.address,
                "uid": device.uid,
                "ip_mode": device.ip_mode,
                "onvif_ip": device.onvif_ip,
                "onvif_mac": device.onvif_mac,
                "onvif_port": onvif_base + index,
                "stream_high": device.stream_summary("high"),
                "stream_low": device.stream_summary("low"),
                "is_battery": device.is_battery_camera,
                "enable_motion": device.enable_motion,
                "enable_battery": device.enable_battery,
            }
            for index, device in enumerate(document.devices)
        ]
        return view

    def _device_row(
        self,
        index: int,
        device: DeviceConfig,
        table: AddressTable,
        host_ip: str,
        onvif_base: int,
        service_ports: dict[str, tuple[int, int | None]],
        active_streams: frozenset[str],
    ) -> DeviceRow:
        resolved = table.resolve(device)
        onvif_port = onvif_base + index
        state = self._device_states.get(device.name)
        restream_port, relay_port = self._stream_ports(service_ports)
        return DeviceRow(
            name=device.name,
            address=device.address,
            ip_mode=device.ip_mode,
            onvif_ip=resolved,
            onvif_port=onvif_port,
            onvif_url=f"http://{resolved}:{onvif_port}" if resolved else None,
            is_battery=device.is_battery_camera,
            enable_motion=device.enable_motion,
            enable_battery=device.enable_battery,
            battery=state.battery,
            motion=state.motion,
            last_seen=state.last_seen,
            streaming=device.name in active_streams,
            streams=build_stream_endpoints(host_ip, device.name, restream_port, relay_port),
        )

    def _read_sources(self) -> tuple[ConfigDocument, AddressTable, dict[str, int]]:
        """Each source degrades to its own empty default."""
        return (
            _load_or_default("options document", self._config_store.load, ConfigDocument),
            _load_or_default("address table", self._address_resolver.load, AddressTable),
            _load_or_default("actual ports", self._port_table.load, dict),
        )

    def _stream_ports(
        self, service_ports: dict[str, tuple[int, int | None]]
    ) -> tuple[int | None, int | None]:
        streams = self._settings.streams
        restream = service_ports.get(streams.restream_service)
        relay = service_ports.get(streams.relay_service)
        return (restream[0] if restream else None, relay[0] if relay else None)

    async def _active_streams(
        self, service_ports: dict[str, tuple[int, int | None]]
    ) -> frozenset[str]:
        if self._stream_introspector is None:
            return frozenset()
        streams = self._settings.streams
        target = self._settings.service(streams.api_service)
        if target is None:
            return frozenset()
        _port, api_port = service_ports[target.name]
        try:
            return await self._stream_introspector.active_streams(target.host, api_port)
        except Exception:
            logger.warning("Stream introspection raised; treating all streams as idle", exc_info=True)
            return frozenset()

    def _detect_host(self, document: ConfigDocument) -> str:
        try:
            return self._host_detector(document.host_interface)
        except Exception:
            logger.warning("Host address detection failed", exc_info=True)
            return FALLBACK_ADDRESS

    def _broker_status(self) -> BrokerStatus:
        connected = self._is_connected()
        try:
            broker = self._broker_loader()
        except Exception:
            logger.warning("Broker settings could not be loaded", exc_info=True)
            broker = None
        if broker is None:
            return BrokerStatus(running=connected, available=False)
        return BrokerStatus(
            running=connected,
            available=True,
            host=broker.host,
            port=broker.port,
            ssl=broker.ssl,
        )

    def _is_connected(self) -> bool:
        if self._connection is None:
            return False
        return bool(self._connection.connected)


__all__ = ["StatusAggregator", "build_stream_endpoints"]
