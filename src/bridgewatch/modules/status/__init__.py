"""Status publishing and metrics modules."""

from .prometheus_exporter import PrometheusExporter
from .status_poller import StatusPoller

__all__ = ["PrometheusExporter", "StatusPoller"]
