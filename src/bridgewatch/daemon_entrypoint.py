"""
CLI entrypoint that boots the bridgewatch daemon.

Loads the daemon settings through Dynaconf, builds the shared stores, wires
the telemetry bridge, status poller, status API and (optionally) the
Prometheus exporter into the orchestrator and runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .core.aggregator import StatusAggregator
from .core.config import ConfigError, ConfigService, ConfigStore, DaemonSettings, load_broker_settings
from .core.history import MessageLog, MotionEventLog
from .core.logging_setup import configure_logging
from .core.orchestrator import Orchestrator
from .core.probe import LivenessProber
from .core.state import DeviceStateStore
from .core.streams import Go2rtcStreamIntrospector
from .modules import PrometheusExporter, StatusApi, StatusPoller, TelemetryBridge

LOGGER = logging.getLogger(__name__)


@dataclass
class DaemonContext:
    """Shared stores and services handed to the modules."""

    settings: DaemonSettings
    device_states: DeviceStateStore
    motion_log: MotionEventLog
    message_log: MessageLog
    aggregator: StatusAggregator
    bridge: TelemetryBridge


def build_context(settings: DaemonSettings, *, message_log: MessageLog | None = None) -> DaemonContext:
    """Create the stores and the aggregator/bridge pair sharing them."""
    paths = settings.paths
    device_states = DeviceStateStore()
    motion_log = MotionEventLog(settings.history.motion_capacity)
    if message_log is None:
        message_log = MessageLog(settings.history.log_capacity)
    config_store = ConfigStore(paths.options_file)

    def broker_loader():
        return load_broker_settings(settings.telemetry, paths.broker_file)

    bridge = TelemetryBridge(
        device_states=device_states,
        motion_log=motion_log,
        config_store=config_store,
        broker_loader=broker_loader,
    )
    aggregator = StatusAggregator(
        settings=settings,
        device_states=device_states,
        prober=LivenessProber(default_timeout=settings.probe.timeout_seconds),
        config_store=config_store,
        connection=bridge,
        stream_introspector=Go2rtcStreamIntrospector(
            path=settings.streams.path, timeout=settings.streams.timeout_seconds
        ),
        broker_loader=broker_loader,
    )
    return DaemonContext(
        settings=settings,
        device_states=device_states,
        motion_log=motion_log,
        message_log=message_log,
        aggregator=aggregator,
        bridge=bridge,
    )


async def build_orchestrator(
    context: DaemonContext, config_service: ConfigService, *, serve_api: bool = True
) -> Orchestrator:
    orchestrator = Orchestrator()
    modules = [
        context.bridge,
        StatusPoller(aggregator=context.aggregator),
        StatusApi(
            aggregator=context.aggregator,
            motion_log=context.motion_log,
            message_log=context.message_log,
        ),
        PrometheusExporter(motion_log=context.motion_log, message_log=context.message_log),
    ]
    for module in modules:
        module_config = config_service.module_config_for(module.name)
        if module.name == StatusApi.name and not serve_api:
            module_config.options["serve_api"] = False
        if not module_config.enabled:
            LOGGER.info("Config disabled for %s; skipping", module.name)
            continue
        await orchestrator.add_module(module, module_config)
    return orchestrator


async def run_daemon(*, config_service: ConfigService, message_log: MessageLog, serve_api: bool = True) -> None:
    """Instantiate modules and run until interrupted."""
    settings = config_service.snapshot
    context = build_context(settings, message_log=message_log)
    orchestrator = await build_orchestrator(context, config_service, serve_api=serve_api)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    await orchestrator.start()
    LOGGER.info(
        "bridgewatch running with %d modules; status API on %s:%s.",
        len(orchestrator.modules),
        settings.status_api.host,
        settings.status_api.port,
    )
    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="bridgewatch status aggregation daemon.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: /etc/bridgewatch).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: the configured logging.level, else INFO).",
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Build the status API without binding an HTTP listener.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        config_service = ConfigService(config_dir=args.config_dir)
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2
    settings = config_service.snapshot
    message_log = MessageLog(settings.history.log_capacity)
    configure_logging(
        args.log_level or settings.logging.level,
        message_log=message_log,
        log_file=settings.logging.file,
        max_mb=settings.logging.max_mb,
        backup_count=settings.logging.backup_count,
    )
    try:
        asyncio.run(
            run_daemon(
                config_service=config_service,
                message_log=message_log,
                serve_api=not args.no_api,
            )
        )
    except KeyboardInterrupt:  # pragma: no cover - handled by signal handlers
        return 0
    except Exception:  # pragma: no cover - top-level safety net
        LOGGER.exception("bridgewatch terminated with an unexpected error.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
