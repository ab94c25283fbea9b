import asyncio

import httpx
import pytest

from bridgewatch.core.aggregator import StatusAggregator
from bridgewatch.core.contracts import LogLine, ModuleConfig, MotionEvent
from bridgewatch.core.history import MessageLog, MotionEventLog
from bridgewatch.core.probe import LivenessProber
from bridgewatch.core.state import DeviceStateStore
from bridgewatch.modules.dashboard.status_api import StatusApi


async def _refuse(host: str, port: int):
    raise ConnectionRefusedError(f"{host}:{port}")


@pytest.fixture
def histories() -> tuple[MotionEventLog, MessageLog]:
    motion_log = MotionEventLog()
    for index in range(60):
        motion_log.append(MotionEvent(device=f"cam{index}"))
    message_log = MessageLog()
    for index in range(250):
        message_log.append(LogLine(level="INFO", message=f"line {index}"))
    return motion_log, message_log


@pytest.fixture
def make_status_api(runtime_settings, runtime_dir, sample_options, write_json, histories):
    write_json(runtime_dir / "options.json", sample_options)
    states = DeviceStateStore()
    states.record_battery("garden", 64)
    aggregator = StatusAggregator(
        settings=runtime_settings,
        device_states=states,
        prober=LivenessProber(default_timeout=0.2, connector=_refuse),
        host_detector=lambda interface: "10.0.0.2",
    )
    motion_log, message_log = histories

    async def _make() -> StatusApi:
        module = StatusApi(aggregator=aggregator, motion_log=motion_log, message_log=message_log)
        await module.configure(ModuleConfig(options={"serve_api": False}))
        await module.start()
        return module

    return _make


def _client(module: StatusApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=module.app), base_url="http://test")


def test_app_requires_start() -> None:
    module = StatusApi(
        aggregator=object(),  # type: ignore[arg-type]
        motion_log=MotionEventLog(),
        message_log=MessageLog(),
    )
    with pytest.raises(RuntimeError):
        _ = module.app


@pytest.mark.asyncio
async def test_status_endpoint(make_status_api) -> None:
    status_api = await make_status_api()
    async with _client(status_api) as client:
        response = await client.get("/api/status")
        health = await client.get("/health")

    assert health.json() == {"status": "ok"}
    body = response.json()
    assert body["host_ip"] == "10.0.0.2"
    services = body["services"]
    assert set(services) >= {"mqtt", "neolink", "go2rtc", "onvif", "dashboard"}
    assert services["mqtt"] == {
        "running": False,
        "available": False,
        "host": None,
        "port": None,
        "ssl": False,
    }
    assert services["neolink"]["running"] is False
    assert services["go2rtc"]["api_port"] == 1984
    assert services["dashboard"]["running"] is True
    assert body["onvif_credentials"] == {"username": "viewer", "password": "viewer-pass"}
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_cameras_and_streams(make_status_api) -> None:
    status_api = await make_status_api()
    async with _client(status_api) as client:
        cameras = (await client.get("/api/cameras")).json()
        streams = (await client.get("/api/streams")).json()

    assert [camera["name"] for camera in cameras] == ["front", "garden"]
    assert cameras[1]["battery"] == 64
    assert cameras[1]["last_seen"] is not None
    assert cameras[0]["onvif_url"] == "http://192.168.1.120:8001"
    assert cameras[0]["streams"]["high"] == "rtsp://10.0.0.2:18554/front"
    assert streams[0] == {
        "name": "front",
        "high": "rtsp://10.0.0.2:18554/front",
        "low": "rtsp://10.0.0.2:18554/front_sub",
        "neolink_high": "rtsp://10.0.0.2:8554/front/main",
        "neolink_low": "rtsp://10.0.0.2:8554/front/sub",
    }


@pytest.mark.asyncio
async def test_motion_and_logs_are_bounded(make_status_api) -> None:
    status_api = await make_status_api()
    async with _client(status_api) as client:
        motion = (await client.get("/api/motion")).json()
        default_logs = (await client.get("/api/logs")).json()
        few_logs = (await client.get("/api/logs", params={"limit": 2})).json()
        capped_logs = (await client.get("/api/logs", params={"limit": 5000})).json()
        invalid = await client.get("/api/logs", params={"limit": "many"})

    assert len(motion) == 50
    assert motion[0]["device"] == "cam59"
    assert motion[0]["state"] == "on"
    assert len(default_logs) == 100
    assert [line["message"] for line in few_logs] == ["line 249", "line 248"]
    assert len(capped_logs) == 200
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_config_is_redacted(make_status_api) -> None:
    status_api = await make_status_api()
    async with _client(status_api) as client:
        config = (await client.get("/api/config")).json()

    assert config["neolink_rtsp_password"] == "***"
    assert config["host_interface"] == "eth0"
    assert [camera["name"] for camera in config["cameras"]] == ["front", "garden"]


@pytest.mark.asyncio
async def test_ingress_prefix_is_stripped(make_status_api) -> None:
    status_api = await make_status_api()
    prefix = "/api/hassio_ingress/token123"
    async with _client(status_api) as client:
        prefixed = await client.get(f"{prefix}/api/motion", headers={"X-Ingress-Path": prefix})
        root = await client.get(f"{prefix}/health", headers={"X-Ingress-Path": f"{prefix}/"})
        unprefixed = await client.get("/api/motion", headers={"X-Ingress-Path": prefix})
        foreign = await client.get(f"{prefix}/api/motion")

    assert prefixed.status_code == 200
    assert len(prefixed.json()) == 50
    assert root.json() == {"status": "ok"}
    assert unprefixed.status_code == 200
    assert foreign.status_code == 404


class FakeServer:
    def __init__(self, config) -> None:
        self.config = config
        self.should_exit = False

    async def serve(self) -> None:
        while not self.should_exit:
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_server_uses_factories(runtime_settings) -> None:
    captured: dict[str, object] = {}

    def config_factory(**kwargs):
        captured.update(kwargs)
        return kwargs

    module = StatusApi(
        aggregator=StatusAggregator(settings=runtime_settings, device_states=DeviceStateStore()),
        motion_log=MotionEventLog(),
        message_log=MessageLog(),
        config_factory=config_factory,
        server_factory=FakeServer,
    )
    await module.configure(ModuleConfig(options={"host": "127.0.0.1", "port": 8123}))
    await module.start()
    await module.stop()

    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 8123
    assert captured["app"] is module.app
