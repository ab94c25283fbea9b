"""
Lifecycle-managed bridgewatch components grouped by responsibility.
"""

from .dashboard.status_api import StatusApi
from .input.telemetry_bridge import TelemetryBridge
from .status.prometheus_exporter import PrometheusExporter
from .status.status_poller import StatusPoller

__all__ = ["PrometheusExporter", "StatusApi", "StatusPoller", "TelemetryBridge"]
