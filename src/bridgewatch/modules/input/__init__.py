"""Input modules feeding telemetry into the daemon."""

from .telemetry_bridge import ConnectionState, TelemetryBridge

__all__ = ["ConnectionState", "TelemetryBridge"]
