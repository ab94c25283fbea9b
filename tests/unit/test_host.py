import socket
from types import SimpleNamespace

from bridgewatch.core.host import FALLBACK_ADDRESS, detect_host_ip


def _addr(address: str, family: int = socket.AF_INET) -> SimpleNamespace:
    return SimpleNamespace(family=family, address=address)


def test_prefers_configured_interface() -> None:
    table = {
        "lo": [_addr("127.0.0.1")],
        "eth1": [_addr("10.0.0.9")],
        "eth0": [_addr("fe80::1", socket.AF_INET6), _addr("192.168.1.10")],
    }
    assert detect_host_ip("eth0", interfaces=lambda: table) == "192.168.1.10"


def test_skips_loopback_and_virtual_interfaces() -> None:
    table = {
        "lo": [_addr("127.0.0.1")],
        "onvif-front": [_addr("192.168.1.120")],
        "macvlan0": [_addr("192.168.1.121")],
        "wlan0": [_addr("10.1.2.3")],
    }
    assert detect_host_ip("eth0", interfaces=lambda: table) == "10.1.2.3"


def test_falls_back_to_loopback() -> None:
    assert detect_host_ip("eth0", interfaces=lambda: {"lo": [_addr("127.0.0.1")]}) == FALLBACK_ADDRESS


def test_enumeration_failure_falls_back() -> None:
    def broken():
        raise OSError("no netlink")

    assert detect_host_ip(interfaces=broken) == FALLBACK_ADDRESS
