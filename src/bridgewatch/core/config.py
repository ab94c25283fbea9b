"""
Configuration for bridgewatch.

Two kinds of configuration live here:

* the daemon's own operating parameters (service ports, file locations,
  broker behaviour), loaded once through Dynaconf from layered YAML files
  plus ``BRIDGEWATCH_*`` environment variables and validated with pydantic;
* the declarative device document and the small tables written by other
  processes (indirection table, actual ports, broker file). These are
  re-read on every call and always degrade to an empty default instead of
  raising, so the status view can be produced even when they are broken.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal

from dynaconf import Dynaconf
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from .contracts import ModuleConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
DEFAULT_CONFIG_DIR = Path("/etc/bridgewatch")


class ConfigError(RuntimeError):
    """Raised when the daemon settings are invalid."""


def _lower_keys(value: Any) -> Any:
    """Recursively lower-case mapping keys; Dynaconf upper-cases top-level names."""
    if isinstance(value, dict):
        return {str(key).lower(): _lower_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]


def read_json_document(
    path: str | Path,
    default: Any,
    *,
    label: str,
    missing_level: int = logging.WARNING,
) -> Any:
    """
    Read and parse a JSON file in one shot, returning ``default`` on any failure.

    A missing file is logged at ``missing_level`` (tables written by other
    processes legitimately do not exist yet); unreadable or malformed
    content is always logged as a warning.
    """
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        logger.log(missing_level, "%s file %s not found; using defaults", label, candidate)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read %s file %s: %s", label, candidate, exc)
    return default


# ---------------------------------------------------------------------------
# Daemon settings
# ---------------------------------------------------------------------------


class PathSettings(BaseModel):
    """Locations of the documents re-read at runtime."""

    model_config = ConfigDict(extra="ignore")

    options_file: Path = Field(default=Path("/data/options.json"))
    address_table: Path = Field(default=Path("/tmp/camera-ips.json"))
    ports_file: Path = Field(default=Path("/tmp/actual-ports.json"))
    broker_file: Path = Field(default=Path("/tmp/mqtt.json"))


class ServiceTarget(BaseModel):
    """A downstream service whose TCP port(s) are probed for liveness."""

    model_config = ConfigDict(extra="ignore")

    name: str
    host: str = Field(default="127.0.0.1")
    port: int = Field(gt=0, lt=65536)
    port_key: str | None = Field(
        default=None, description="Key into the actual-ports table overriding `port`."
    )
    api_port: int | None = Field(default=None, gt=0, lt=65536)
    api_port_key: str | None = Field(default=None)

    def resolved_ports(self, overrides: dict[str, int]) -> tuple[int, int | None]:
        port = overrides.get(self.port_key, self.port) if self.port_key else self.port
        api_port = self.api_port
        if self.api_port_key and self.api_port_key in overrides:
            api_port = overrides[self.api_port_key]
        return port, api_port


def _default_services() -> list[ServiceTarget]:
    return [
        ServiceTarget(name="neolink", port=8554, port_key="neolink"),
        ServiceTarget(
            name="go2rtc",
            port=18554,
            port_key="go2rtc_rtsp",
            api_port=1984,
            api_port_key="go2rtc_api",
        ),
    ]


class OnvifSettings(BaseModel):
    """Emulated device server; device N listens on ``base_port + N``."""

    model_config = ConfigDict(extra="ignore")

    base_port: int = Field(default=8001, gt=0, lt=65536)
    port_key: str = Field(default="onvif_base")


class BrokerSettings(BaseModel):
    """Connection parameters for the publish/subscribe broker."""

    model_config = ConfigDict(extra="ignore")

    host: str = Field(min_length=1)
    port: int = Field(default=1883, gt=0, lt=65536)
    username: OptionalText = Field(default=None)
    password: OptionalText = Field(default=None)
    ssl: bool = Field(default=False)


class TelemetrySettings(BaseModel):
    """Behaviour of the telemetry bridge."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    namespace: str = Field(default="neolink")
    discovery_prefix: str = Field(default="homeassistant")
    client_id: str = Field(default="reolink-dashboard")
    reconnect_interval_seconds: float = Field(default=5.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    queue_size: int = Field(default=1000, ge=1)
    broker: BrokerSettings | None = Field(
        default=None, description="Inline broker settings; take precedence over the broker file."
    )


class ProbeSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timeout_seconds: float = Field(default=2.0, gt=0)


class StreamSettings(BaseModel):
    """Where stream consumers are introspected and how stream URLs are built."""

    model_config = ConfigDict(extra="ignore")

    api_service: str = Field(default="go2rtc", description="Service whose API port is queried.")
    path: str = Field(default="/api/streams")
    timeout_seconds: float = Field(default=2.0, gt=0)
    restream_service: str = Field(default="go2rtc")
    relay_service: str = Field(default="neolink")


class StatusApiSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = Field(default="0.0.0.0")  # nosec B104 - addon ingress needs all interfaces
    port: int = Field(default=8099, gt=0, lt=65536)
    port_key: str = Field(default="dashboard")
    serve_api: bool = Field(default=True)


class PrometheusSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, gt=0, lt=65536)


class PollerSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    interval_seconds: float = Field(default=10.0, gt=0)
    topic: str = Field(default="status.snapshot")


class HistorySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    motion_capacity: int = Field(default=50, ge=1)
    log_capacity: int = Field(default=200, ge=1)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None)
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)


class DaemonSettings(BaseModel):
    """Validated view of the daemon's operating parameters."""

    model_config = ConfigDict(extra="ignore")

    paths: PathSettings = Field(default_factory=PathSettings)
    services: list[ServiceTarget] = Field(default_factory=_default_services)
    onvif: OnvifSettings = Field(default_factory=OnvifSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    streams: StreamSettings = Field(default_factory=StreamSettings)
    status_api: StatusApiSettings = Field(default_factory=StatusApiSettings)
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("services")
    @classmethod
    def _unique_service_names(cls, value: list[ServiceTarget]) -> list[ServiceTarget]:
        names = [service.name for service in value]
        if len(names) != len(set(names)):
            raise ValueError("service names must be unique")
        return value

    def service(self, name: str) -> ServiceTarget | None:
        for target in self.services:
            if target.name == name:
                return target
        return None

    def module_config(self, module_name: str) -> ModuleConfig:
        """Build the ModuleConfig for one of the lifecycle-managed modules."""
        if module_name == "modules.input.telemetry_bridge":
            telemetry = self.telemetry
            return ModuleConfig(
                enabled=telemetry.enabled,
                options={
                    "namespace": telemetry.namespace,
                    "discovery_prefix": telemetry.discovery_prefix,
                    "client_id": telemetry.client_id,
                    "reconnect_interval": telemetry.reconnect_interval_seconds,
                    "connect_timeout": telemetry.connect_timeout_seconds,
                    "queue_size": telemetry.queue_size,
                },
            )
        if module_name == "modules.status.status_poller":
            return ModuleConfig(
                enabled=self.poller.enabled,
                options={
                    "interval_seconds": self.poller.interval_seconds,
                    "topic": self.poller.topic,
                },
            )
        if module_name == "modules.status.prometheus_exporter":
            return ModuleConfig(
                enabled=self.prometheus.enabled,
                options={
                    "addr": self.prometheus.host,
                    "port": self.prometheus.port,
                    "snapshot_topic": self.poller.topic,
                },
            )
        if module_name == "modules.dashboard.status_api":
            return ModuleConfig(
                enabled=True,
                options={
                    "host": self.status_api.host,
                    "port": self.status_api.port,
                    "serve_api": self.status_api.serve_api,
                    "motion_limit": self.history.motion_capacity,
                    "log_limit": self.history.log_capacity,
                },
            )
        raise KeyError(f"No configuration builder registered for {module_name}")


class ConfigService:
    """Load, validate, and distribute the daemon settings."""

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        existing_files = [
            str(path)
            for path in (self._config_dir / name for name in CONFIG_FILENAMES)
            if path.exists()
        ]
        if not existing_files:
            logger.info("No settings files in %s; running with built-in defaults.", self._config_dir)
        self._settings = settings or Dynaconf(
            envvar_prefix="BRIDGEWATCH",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
            # secrets.yaml adds keys (e.g. telemetry.broker) to sections of config.yaml.
            merge_enabled=True,
        )
        self._snapshot = self._build_snapshot()

    @property
    def snapshot(self) -> DaemonSettings:
        """Latest validated settings."""
        return self._snapshot

    def refresh(self) -> DaemonSettings:
        """Reload settings files and environment, then revalidate."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def module_config_for(self, module_name: str) -> ModuleConfig:
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self) -> DaemonSettings:
        data = _lower_keys(self._settings.as_dict())
        try:
            return DaemonSettings.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Settings validation failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Declarative device document
# ---------------------------------------------------------------------------


class DeviceConfig(BaseModel):
    """One declared camera as it appears in the options document."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(min_length=1)
    address: OptionalText = Field(default=None)
    uid: OptionalText = Field(default=None)
    ip_mode: Literal["static", "dynamic"] = Field(default="static")
    onvif_ip: OptionalText = Field(default=None)
    onvif_mac: OptionalText = Field(default=None)
    is_battery_camera: bool = Field(default=False)
    enable_motion: bool = Field(default=False)
    enable_battery: bool = Field(default=False)
    stream_high_width: int | None = Field(default=None)
    stream_high_height: int | None = Field(default=None)
    stream_high_fps: int | None = Field(default=None)
    stream_high_bitrate: int | None = Field(default=None)
    stream_low_width: int | None = Field(default=None)
    stream_low_height: int | None = Field(default=None)
    stream_low_fps: int | None = Field(default=None)
    stream_low_bitrate: int | None = Field(default=None)

    @field_validator("ip_mode", mode="before")
    @classmethod
    def _normalise_ip_mode(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in {"dynamic", "dhcp"}:
            return "dynamic"
        return "static"

    @property
    def has_motion_sensor(self) -> bool:
        return self.enable_motion

    @property
    def has_battery(self) -> bool:
        return self.enable_battery

    def stream_summary(self, profile: Literal["high", "low"]) -> str:
        def _fmt(value: int | None) -> str:
            return "–" if value is None else str(value)

        width = getattr(self, f"stream_{profile}_width")
        height = getattr(self, f"stream_{profile}_height")
        fps = getattr(self, f"stream_{profile}_fps")
        bitrate = getattr(self, f"stream_{profile}_bitrate")
        return f"{_fmt(width)}x{_fmt(height)} @{_fmt(fps)}fps {_fmt(bitrate)}kbps"


class ConfigDocument(BaseModel):
    """The declarative document: device list plus a few operator preferences."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    host_interface: str = Field(default="eth0")
    log_level: str = Field(default="info")
    onvif_username: str = Field(default="admin")
    onvif_password: str = Field(default="admin")
    neolink_rtsp_password: str | None = Field(default=None)
    cameras: tuple[DeviceConfig, ...] = Field(default=())

    @field_validator("host_interface", "onvif_username", "onvif_password", mode="before")
    @classmethod
    def _fill_blank_defaults(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("cameras", mode="before")
    @classmethod
    def _drop_duplicate_names(cls, value: Any) -> Any:
        if value is None:
            return ()
        if not isinstance(value, list | tuple):
            return value
        seen: set[str] = set()
        unique: list[Any] = []
        for entry in value:
            name = entry.get("name") if isinstance(entry, dict) else getattr(entry, "name", None)
            if isinstance(name, str):
                if name in seen:
                    logger.warning(
                        "Duplicate device name %r in options; keeping the first entry", name
                    )
                    continue
                seen.add(name)
            unique.append(entry)
        return unique

    @property
    def devices(self) -> tuple[DeviceConfig, ...]:
        return self.cameras

    def redacted(self) -> dict[str, Any]:
        """Operator-facing view with the RTSP password masked."""
        return {
            "host_interface": self.host_interface,
            "log_level": self.log_level,
            "onvif_username": self.onvif_username,
            "onvif_password": self.onvif_password,
            "neolink_rtsp_password": "***",
        }


class ConfigStore:
    """Re-reads the declarative document on every call; never raises."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ConfigDocument:
        raw = read_json_document(self._path, None, label="options")
        if raw is None:
            return ConfigDocument()
        if not isinstance(raw, dict):
            logger.warning("Options file %s does not contain an object; ignoring", self._path)
            return ConfigDocument()
        try:
            return ConfigDocument.model_validate(raw)
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("Options file %s is invalid: %s", self._path, exc)
            return ConfigDocument()


class PortTableStore:
    """Ports the launcher actually bound, keyed like ``go2rtc_api``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> dict[str, int]:
        raw = read_json_document(
            self._path, {}, label="actual ports", missing_level=logging.DEBUG
        )
        if not isinstance(raw, dict):
            logger.warning("Actual ports file %s does not contain an object; ignoring", self._path)
            return {}
        ports: dict[str, int] = {}
        for key, value in raw.items():
            if isinstance(value, bool):
                continue
            try:
                port = int(value)
            except (TypeError, ValueError, OverflowError):
                continue
            if 0 < port < 65536:
                ports[str(key)] = port
        return ports


def load_broker_settings(
    telemetry: TelemetrySettings, broker_file: str | Path
) -> BrokerSettings | None:
    """
    Resolve broker connection parameters, or ``None`` when there is no broker.

    Inline settings win; otherwise the broker file written by the launcher is
    consulted, where ``"available": false`` explicitly means no broker.
    """
    if telemetry.broker is not None:
        return telemetry.broker
    raw = read_json_document(broker_file, None, label="broker", missing_level=logging.DEBUG)
    if not isinstance(raw, dict) or raw.get("available") is False:
        return None
    try:
        return BrokerSettings.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Broker file %s is invalid: %s", broker_file, exc)
        return None


__all__ = [
    "BrokerSettings",
    "ConfigDocument",
    "ConfigError",
    "ConfigService",
    "ConfigStore",
    "DaemonSettings",
    "DeviceConfig",
    "PortTableStore",
    "ServiceTarget",
    "TelemetrySettings",
    "load_broker_settings",
    "read_json_document",
]
