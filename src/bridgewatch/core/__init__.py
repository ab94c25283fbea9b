"""
Core infrastructure for bridgewatch.

Exposes the event bus, shared contracts, settings loader, orchestrator and
the stores and services the status snapshot is assembled from.
"""

from .aggregator import StatusAggregator
from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigStore, DaemonSettings
from .contracts import (
    BaseModule,
    BasePayload,
    DeviceState,
    HealthStatus,
    ModuleConfig,
    MotionEvent,
    Snapshot,
)
from .history import MessageLog, MotionEventLog
from .orchestrator import Orchestrator
from .state import DeviceStateStore

__all__ = [
    "BaseModule",
    "BasePayload",
    "ConfigError",
    "ConfigService",
    "ConfigStore",
    "DaemonSettings",
    "DeviceState",
    "DeviceStateStore",
    "EventBus",
    "HealthStatus",
    "MessageLog",
    "ModuleConfig",
    "MotionEvent",
    "MotionEventLog",
    "Orchestrator",
    "Snapshot",
    "StatusAggregator",
    "Subscription",
]
