"""Shared fixtures: a scripted host so probes never touch the real network stack."""
from typing import Dict, List, Optional

import pytest

from netperm.config import Settings
from netperm.core.host import ConnectResult, EchoResult, UdpResult
from netperm.core.orchestrator import Orchestrator
from netperm.core.parse import Addresses, LinkState, RadioBlock, Route, RulesetSummary
from netperm.core.preflight import Target


class FakeHost:
    """Healthy wired host by default; override attributes to script a fault.

    Any attribute set to an exception instance is raised by its query.
    """

    def __init__(self, **overrides):
        self.route = Route(dev="eth0", gateway="192.168.1.1", prefsrc="192.168.1.10")
        self.default_gw: Optional[str] = "192.168.1.1"
        self.link = LinkState("eth0", ("BROADCAST", "MULTICAST", "UP", "LOWER_UP"), "UP")
        self.wireless = False
        self.associated = True
        self.radios: List[RadioBlock] = []
        self.neighbor: Optional[str] = "REACHABLE"
        self.arp_mac: Optional[str] = None
        self.addrs = Addresses(ipv4=("192.168.1.10",), ipv6=("2001:db8::10",))
        self.echo: Dict[str, EchoResult] = {}
        self.connect = ConnectResult("open", latency_ms=1.5)
        self.udp = UdpResult("open")
        self.listener = False
        self.mechanism: Optional[str] = None
        self.ruleset: Optional[RulesetSummary] = None
        self.calls: List[tuple] = []
        for name, value in overrides.items():
            setattr(self, name, value)

    def _answer(self, call: tuple, value):
        self.calls.append(call)
        if isinstance(value, Exception):
            raise value
        return value

    def route_for(self, destination):
        return self._answer(("route_for", destination), self.route)

    def default_gateway(self, ipv6=False):
        return self._answer(("default_gateway", ipv6), self.default_gw)

    def link_state(self, ifname):
        return self._answer(("link_state", ifname), self.link)

    def is_wireless(self, ifname):
        return self._answer(("is_wireless", ifname), self.wireless)

    def wifi_associated(self, ifname):
        return self._answer(("wifi_associated", ifname), self.associated)

    def rfkill_radios(self):
        return self._answer(("rfkill_radios",), self.radios)

    def neighbor_state(self, address, ifname):
        return self._answer(("neighbor_state", address, ifname), self.neighbor)

    def arp_resolve(self, address, ifname):
        return self._answer(("arp_resolve", address, ifname), self.arp_mac)

    def addresses(self, ifname):
        return self._answer(("addresses", ifname), self.addrs)

    def icmp_echo(self, address):
        if isinstance(self.echo, Exception):
            return self._answer(("icmp_echo", address), self.echo)
        default = EchoResult(address=address, sent=1, received=1, avg_rtt_ms=0.8)
        return self._answer(("icmp_echo", address), self.echo.get(address, default))

    def tcp_connect(self, address, port, ifname=None):
        return self._answer(("tcp_connect", address, port, ifname), self.connect)

    def udp_probe(self, address, port):
        return self._answer(("udp_probe", address, port), self.udp)

    def local_listener(self, port, protocol):
        return self._answer(("local_listener", port, protocol), self.listener)

    def firewall_mechanism(self):
        return self._answer(("firewall_mechanism",), self.mechanism)

    def firewall_ruleset(self, mechanism, ipv6=False):
        return self._answer(("firewall_ruleset", mechanism, ipv6), self.ruleset)


def unreachable(address: str, icmp_error: Optional[str] = None) -> EchoResult:
    return EchoResult(address=address, sent=1, received=0, icmp_error=icmp_error)


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def target():
    return Target(host="8.8.8.8", address="8.8.8.8", port=443, protocol="tcp")


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def make_orchestrator(settings):
    def _make(host, **kwargs):
        kwargs.setdefault("privilege_check", lambda: True)
        return Orchestrator(host=host, settings=settings, **kwargs)
    return _make
