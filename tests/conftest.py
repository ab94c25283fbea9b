from __future__ import annotations

import json
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from bridgewatch.core.config import ConfigService, DaemonSettings


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


def _write_json(path: Path, content: Any) -> Path:
    path.write_text(json.dumps(content), encoding="utf-8")
    return path


@pytest.fixture
def write_json() -> Callable[[Path, Any], Path]:
    return _write_json


@pytest.fixture
def runtime_dir(tmp_path: Path) -> Path:
    """Directory standing in for /data and /tmp of the deployed daemon."""

    directory = tmp_path / "runtime"
    directory.mkdir()
    return directory


@pytest.fixture
def sample_config_dir(tmp_path: Path, runtime_dir: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_yaml = f"""
    paths:
      options_file: "{(runtime_dir / 'options.json').as_posix()}"
      address_table: "{(runtime_dir / 'camera-ips.json').as_posix()}"
      ports_file: "{(runtime_dir / 'actual-ports.json').as_posix()}"
      broker_file: "{(runtime_dir / 'mqtt.json').as_posix()}"

    services:
      - name: "neolink"
        port: 18554
        port_key: "neolink"
      - name: "go2rtc"
        port: 28554
        port_key: "go2rtc_rtsp"
        api_port: 11984
        api_port_key: "go2rtc_api"

    telemetry:
      namespace: "lab"
      reconnect_interval_seconds: 1

    probe:
      timeout_seconds: 0.5

    status_api:
      host: "127.0.0.1"
      port: 9099
      serve_api: false

    prometheus:
      enabled: true
      port: 9999

    poller:
      interval_seconds: 2
    """
    secrets_yaml = """
    telemetry:
      broker:
        host: "broker.lab"
        port: 8883
        username: "dashboard"
        password: "s3cret"
        ssl: true
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "secrets.yaml", secrets_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)


@pytest.fixture
def runtime_settings(runtime_dir: Path) -> DaemonSettings:
    """Built-in defaults with every runtime file pointed into ``runtime_dir``."""

    return DaemonSettings.model_validate(
        {
            "paths": {
                "options_file": runtime_dir / "options.json",
                "address_table": runtime_dir / "camera-ips.json",
                "ports_file": runtime_dir / "actual-ports.json",
                "broker_file": runtime_dir / "mqtt.json",
            },
            "probe": {"timeout_seconds": 0.5},
        }
    )


@pytest.fixture
def sample_options() -> dict[str, Any]:
    return {
        "host_interface": "eth0",
        "log_level": "debug",
        "onvif_username": "viewer",
        "onvif_password": "viewer-pass",
        "neolink_rtsp_password": "rtsp-pass",
        "cameras": [
            {
                "name": "front",
                "address": "192.168.1.20",
                "uid": "UID-FRONT",
                "ip_mode": "static",
                "onvif_ip": "192.168.1.120",
                "enable_motion": True,
                "enable_battery": False,
                "stream_high_width": 2560,
                "stream_high_height": 1440,
                "stream_high_fps": 15,
                "stream_high_bitrate": 4096,
            },
            {
                "name": "garden",
                "uid": "UID-GARDEN",
                "ip_mode": "dhcp",
                "onvif_ip": "192.168.1.121",
                "is_battery_camera": True,
                "enable_motion": True,
                "enable_battery": True,
            },
        ],
    }
