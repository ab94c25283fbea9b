"""
Best-effort introspection of which restreamed cameras currently have viewers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class StreamIntrospector(Protocol):
    """Anything that can tell which streams currently have consumers."""

    async def active_streams(self, host: str, port: int | None) -> frozenset[str]: ...


def streams_with_consumers(payload: Any) -> frozenset[str]:
    """
    Extract stream names with at least one client from a go2rtc
    ``/api/streams`` response body.
    """
    if not isinstance(payload, dict):
        return frozenset()
    active = set()
    for name, info in payload.items():
        if not isinstance(info, dict):
            continue
        clients = info.get("clients")
        if isinstance(clients, list) and clients:
            active.add(str(name))
    return frozenset(active)


class Go2rtcStreamIntrospector:
    """Query the go2rtc HTTP API; every failure reads as "nothing streaming"."""

    def __init__(
        self,
        *,
        path: str = "/api/streams",
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._path = path
        self._timeout = timeout
        self._transport = transport

    async def active_streams(self, host: str, port: int | None) -> frozenset[str]:
        if not port:
            return frozenset()
        url = f"http://{host}:{port}{self._path}"
        try:
            # httpx applies its timeout per phase; this bounds the whole request.
            payload = await asyncio.wait_for(self._fetch(url), self._timeout)
        except TimeoutError:
            logger.debug("Stream introspection via %s timed out", url)
            return frozenset()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Stream introspection via %s failed: %s", url, exc)
            return frozenset()
        return streams_with_consumers(payload)

    async def _fetch(self, url: str) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()


__all__ = ["Go2rtcStreamIntrospector", "StreamIntrospector", "streams_with_consumers"]
