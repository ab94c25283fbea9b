"""
TCP reachability checks used purely as health signals.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Connector = Callable[[str, int], Awaitable[tuple[Any, asyncio.StreamWriter]]]


async def _open_connection(host: str, port: int) -> tuple[Any, asyncio.StreamWriter]:
    return await asyncio.open_connection(host, port)


class LivenessProber:
    """
    Resolve ``True`` when a TCP connection to (host, port) can be established.

    Refusals, unreachable hosts, DNS failures and timeouts all map to
    ``False``; ``probe`` never raises. Each call owns its own connection and
    closes it before returning, so concurrent probes share nothing.
    """

    def __init__(
        self,
        *,
        default_timeout: float = 2.0,
        connector: Connector | None = None,
    ) -> None:
        self._default_timeout = default_timeout
        self._connector = connector or _open_connection

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    async def probe(self, host: str | None, port: int | None, timeout: float | None = None) -> bool:
        if not host or not port:
            return False
        limit = self._default_timeout if timeout is None else timeout
        try:
            _reader, writer = await asyncio.wait_for(self._connector(host, port), timeout=limit)
        except (OSError, TimeoutError, ValueError) as exc:
            logger.debug("Probe %s:%s failed: %s", host, port, exc)
            return False
        writer.close()
        with contextlib.suppress(OSError, TimeoutError):
            await asyncio.wait_for(writer.wait_closed(), timeout=limit)
        return True


__all__ = ["LivenessProber"]
