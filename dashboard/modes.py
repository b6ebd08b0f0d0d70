"""Decide whether the edge proxy or the local credential table is authoritative."""

from __future__ import annotations

import ipaddress

from .models import AuthMode

_LOOPBACK_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost"})

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)

_CONTAINER_MARKERS = ("docker", "container")


def _parse_address(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    candidate = hostname
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


def _strip_port(hostname: str) -> str:
    if hostname.startswith("["):
        closing = hostname.find("]")
        return hostname[: closing + 1] if closing != -1 else hostname
    if hostname.count(":") == 1:
        return hostname.split(":", 1)[0]
    return hostname


def is_loopback_host(hostname: str) -> bool:
    host = _strip_port(hostname.strip().lower())
    if host in _LOOPBACK_HOSTNAMES:
        return True
    address = _parse_address(host)
    return address is not None and address.is_loopback


def is_private_host(hostname: str) -> bool:
    host = _strip_port(hostname.strip().lower())
    if any(marker in host for marker in _CONTAINER_MARKERS):
        return True
    address = _parse_address(host)
    if address is None or address.version != 4:
        return False
    return any(address in network for network in _PRIVATE_NETWORKS)


def select_mode(hostname: str, override_flag: bool) -> AuthMode:
    """Return the authentication mode for ``hostname``.

    The override flag and any loopback, private-range or container host
    select local mode. Everything else, including an empty hostname,
    selects the edge proxy.
    """

    if override_flag:
        return AuthMode.LOCAL
    if not hostname:
        return AuthMode.EDGE
    if is_loopback_host(hostname):
        return AuthMode.LOCAL
    if is_private_host(hostname):
        return AuthMode.LOCAL
    return AuthMode.EDGE


__all__ = ["is_loopback_host", "is_private_host", "select_mode"]
