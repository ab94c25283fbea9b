from pathlib import Path

import pytest

from bridgewatch import daemon_entrypoint
from bridgewatch.core.config import ConfigService
from bridgewatch.modules import PrometheusExporter, StatusApi, StatusPoller, TelemetryBridge


def test_parse_args_defaults() -> None:
    args = daemon_entrypoint.parse_args([])
    assert args.config_dir is None
    assert args.log_level is None
    assert args.no_api is False


@pytest.mark.asyncio
async def test_build_orchestrator_registers_enabled_modules(
    sample_config_service: ConfigService,
) -> None:
    context = daemon_entrypoint.build_context(sample_config_service.snapshot)
    orchestrator = await daemon_entrypoint.build_orchestrator(
        context, sample_config_service, serve_api=False
    )

    kinds = [type(module) for module in orchestrator.modules]
    assert kinds == [TelemetryBridge, StatusPoller, StatusApi, PrometheusExporter]
    assert orchestrator.modules[0] is context.bridge
    assert context.motion_log.capacity == 50
    snapshot = await context.aggregator.snapshot()
    assert snapshot.devices == ()
    assert snapshot.broker.available is True
    assert snapshot.broker.host == "broker.lab"


@pytest.mark.asyncio
async def test_disabled_modules_are_skipped(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text(
        "telemetry:\n  enabled: false\npoller:\n  enabled: false\n", encoding="utf-8"
    )
    service = ConfigService(config_dir=config_dir)
    context = daemon_entrypoint.build_context(service.snapshot)
    orchestrator = await daemon_entrypoint.build_orchestrator(context, service)

    assert [module.name for module in orchestrator.modules] == [StatusApi.name]


def test_main_reports_invalid_configuration(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("probe:\n  timeout_seconds: -1\n", encoding="utf-8")

    assert daemon_entrypoint.main(["--config-dir", str(config_dir)]) == 2
