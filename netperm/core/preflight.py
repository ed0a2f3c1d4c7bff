"""
Preflight checks before any probe runs.
We keep this separate so the orchestrator and probes only ever see a
validated Target and never have to second-guess their inputs.
"""
from __future__ import annotations

import ipaddress
import os
import re
import socket
from dataclasses import dataclass
from typing import Callable, Optional

PROTOCOLS = ("tcp", "udp")

_HOSTNAME = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


class PrivilegeError(PermissionError):
    """The process lacks the privilege every probe depends on (root / CAP_NET_ADMIN)."""


class InvalidTargetError(ValueError):
    """Destination, port or protocol cannot be used."""


@dataclass(frozen=True)
class Target:
    host: str            # as given by the caller
    address: str         # literal IP we probe
    port: int
    protocol: str

    @property
    def ipv6(self) -> bool:
        return ipaddress.ip_address(self.address).version == 6

    def __str__(self) -> str:
        return f"{self.host}:{self.port}/{self.protocol}"


def has_privilege() -> bool:
    return os.geteuid() == 0


def require_privilege(check: Callable[[], bool] = has_privilege) -> None:
    if not check():
        raise PrivilegeError("must be run as root (CAP_NET_ADMIN and raw sockets required)")


def resolve_target(host: str, port: int, protocol: str = "tcp") -> Target:
    """Validate the destination triple and pin the hostname to one address.

    The name is resolved once here so every layer probes the same address.
    """
    host = (host or "").strip()
    protocol = (protocol or "").lower()
    if protocol not in PROTOCOLS:
        raise InvalidTargetError(f"unsupported protocol: {protocol!r} (use 'tcp' or 'udp')")
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidTargetError(f"invalid port: {port!r}")

    address = _literal_address(host)
    if address is None:
        if not _HOSTNAME.match(host):
            raise InvalidTargetError(f"invalid destination: {host!r}")
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise InvalidTargetError(f"cannot resolve {host!r}: {exc}") from exc
        # prefer IPv4, IPv6 support is best effort
        infos.sort(key=lambda info: info[0] != socket.AF_INET)
        address = infos[0][4][0]
    return Target(host=host, address=address, port=port, protocol=protocol)


def _literal_address(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None
