"""
Resolution of a device's current management address.

An external process writes a small JSON object mapping device names to the
address it observed (for example after a DHCP lease). That observed value
always wins over what the operator declared, because for dynamically
addressed devices it is the only way to know where the device lives now.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import DeviceConfig, read_json_document

logger = logging.getLogger(__name__)


def _clean(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def resolve_address(
    identity: str,
    static_address: str | None,
    table: Mapping[str, str],
    *,
    dynamic: bool = False,
) -> str | None:
    """
    Return the effective address for ``identity``, or ``None`` when unknown.

    Order: indirection table entry, then the declared static address. A
    dynamically addressed device never falls back to its static value, which
    may describe a lease that no longer exists.
    """
    observed = _clean(table.get(identity))
    if observed is not None:
        return observed
    if dynamic:
        return None
    return _clean(static_address)


@dataclass(frozen=True)
class AddressTable:
    """One read of the indirection table."""

    entries: Mapping[str, str] = field(default_factory=dict)

    def resolve(self, device: DeviceConfig) -> str | None:
        return resolve_address(
            device.name,
            device.onvif_ip,
            self.entries,
            dynamic=device.ip_mode == "dynamic",
        )


class AddressResolver:
    """Reads the indirection table from disk on every call."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> AddressTable:
        raw = read_json_document(
            self._path, {}, label="address table", missing_level=logging.DEBUG
        )
        if not isinstance(raw, dict):
            logger.warning("Address table %s does not contain an object; ignoring", self._path)
            return AddressTable()
        entries = {
            str(key): cleaned for key, value in raw.items() if (cleaned := _clean(value))
        }
        return AddressTable(entries=entries)

    def resolve(
        self, identity: str, static_address: str | None, *, dynamic: bool = False
    ) -> str | None:
        return resolve_address(identity, static_address, self.load().entries, dynamic=dynamic)


__all__ = ["AddressResolver", "AddressTable", "resolve_address"]
