"""Last-known derived state per device, keyed by device name."""

from __future__ import annotations

import datetime as dt
import threading

from .contracts import DeviceState, MotionValue, utc_now


class DeviceStateStore:
    """
    Concurrently readable map of device name to :class:`DeviceState`.

    Entries are created on the first telemetry message for a device and are
    never removed; reads of unknown devices return a default state without
    inserting one. Stored values are frozen models and get replaced on
    update, so a reader never observes a half-applied change.
    """

    def __init__(self) -> None:
        self._states: dict[str, DeviceState] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> DeviceState:
        with self._lock:
            return self._states.get(name) or DeviceState()

    def record_motion(
        self, name: str, motion: MotionValue, *, at: dt.datetime | None = None
    ) -> DeviceState:
        seen = at or utc_now()
        with self._lock:
            current = self._states.get(name) or DeviceState()
            updated = current.model_copy(update={"motion": motion, "last_seen": seen})
            self._states[name] = updated
        return updated

    def record_battery(
        self, name: str, level: int | None, *, at: dt.datetime | None = None
    ) -> DeviceState:
        seen = at or utc_now()
        if level is not None and not 0 <= level <= 100:
            level = None
        with self._lock:
            current = self._states.get(name) or DeviceState()
            updated = current.model_copy(update={"battery": level, "last_seen": seen})
            self._states[name] = updated
        return updated

    def items(self) -> dict[str, DeviceState]:
        with self._lock:
            return dict(self._states)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


__all__ = ["DeviceStateStore"]
