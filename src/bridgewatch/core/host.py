"""Detection of the address under which this host is reachable."""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import psutil

logger = logging.getLogger(__name__)

FALLBACK_ADDRESS = "127.0.0.1"
_SKIPPED_PREFIXES = ("onvif-", "macvlan")

InterfaceSource = Callable[[], Mapping[str, Sequence[Any]]]


def _first_ipv4(addresses: Sequence[Any]) -> str | None:
    for addr in addresses:
        if getattr(addr, "family", None) != socket.AF_INET:
            continue
        value = getattr(addr, "address", "")
        if value and not value.startswith("127."):
            return value
    return None


def detect_host_ip(
    interface: str = "eth0",
    *,
    interfaces: InterfaceSource | None = None,
) -> str:
    """
    Return the first external IPv4 address of ``interface``.

    Falls back to any other interface except loopback and the per-camera
    virtual interfaces created for the emulated devices, then to loopback.
    """
    source = interfaces or psutil.net_if_addrs
    try:
        table = source()
    except OSError as exc:
        logger.warning("Unable to enumerate network interfaces: %s", exc)
        return FALLBACK_ADDRESS
    primary = _first_ipv4(table.get(interface, ()))
    if primary:
        return primary
    for name, addresses in table.items():
        if name == "lo" or name.startswith(_SKIPPED_PREFIXES):
            continue
        candidate = _first_ipv4(addresses)
        if candidate:
            return candidate
    return FALLBACK_ADDRESS


__all__ = ["FALLBACK_ADDRESS", "detect_host_ip"]
