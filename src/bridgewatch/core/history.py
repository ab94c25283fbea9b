"""
Bounded, insertion-ordered histories of recent motion events and log lines.

Both buffers evict the oldest entry first and read out newest-first. They
are written from the telemetry consumer and from logging handlers (which
may run on worker threads) while request handlers read them, so every
access goes through a ``threading.Lock``.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, TypeVar

from .contracts import LogLine, MotionEvent

T = TypeVar("T")

MOTION_CAPACITY = 50
LOG_CAPACITY = 200


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO-evicting buffer safe for concurrent append and read."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._entries: deque[T] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, entry: T) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent_entries(self, limit: int | None = None) -> list[T]:
        """Return up to ``limit`` entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if limit is None:
            return entries
        return entries[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MotionEventLog(RingBuffer[MotionEvent]):
    def __init__(self, capacity: int = MOTION_CAPACITY) -> None:
        super().__init__(capacity)


class MessageLog(RingBuffer[LogLine]):
    def __init__(self, capacity: int = LOG_CAPACITY) -> None:
        super().__init__(capacity)


__all__ = ["LOG_CAPACITY", "MOTION_CAPACITY", "MessageLog", "MotionEventLog", "RingBuffer"]
