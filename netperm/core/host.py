"""
Host collaborator: every query we make against the live network stack.

Route/interface/neighbor/address lookups go through iproute2 (`ip -j`),
radio and wireless state through rfkill and iw, listeners through ss, and
firewall state through whichever front-end is active. ICMP echo, ARP who-has
and the UDP probe are crafted with Scapy (raw sockets, root required); the
TCP probe is a plain socket connect.

Every call is bounded by a timeout from Settings. Output parsing lives in
parse.py; this module only runs things and maps OS errors onto HostError
subclasses the probes know how to record.
"""
from __future__ import annotations

import errno
import ipaddress
import logging
import os
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from scapy.layers.inet import ICMP, IP, UDP
from scapy.layers.inet6 import ICMPv6DestUnreach, ICMPv6EchoReply, ICMPv6EchoRequest, IPv6
from scapy.layers.l2 import ARP, Ether
from scapy.sendrecv import sr, sr1, srp
from scapy.volatile import RandShort

from netperm.config import Settings, get_settings
from netperm.core import parse
from netperm.core.parse import Addresses, LinkState, RadioBlock, Route, RulesetSummary

logger = logging.getLogger(__name__)

SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)

# ICMP destination-unreachable codes that mean "administratively filtered"
ICMP_FILTERED_CODES = frozenset({1, 2, 9, 10, 13})
ICMP_PORT_UNREACHABLE = 3
ICMPV6_ADMIN_PROHIBITED = 1
ICMPV6_PORT_UNREACHABLE = 4

_PERMISSION_MARKERS = ("operation not permitted", "permission denied", "you need to be root")


class HostError(Exception):
    """Base for failures talking to the host."""


class ToolMissing(HostError):
    """An external command is not installed."""


class AccessDenied(HostError):
    """The kernel or a tool refused the query for lack of privilege."""


class CommandTimeout(HostError):
    """An external query exceeded its bounded timeout."""


class CapabilityUnavailable(HostError):
    """A probing primitive (raw socket, address family, ...) cannot be used here."""


class CommandFailed(HostError):
    def __init__(self, tool: str, returncode: int, stderr: str):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{tool} exited {returncode}: {stderr}")


# ----- results -----
@dataclass(frozen=True)
class EchoResult:
    address: str
    sent: int
    received: int
    avg_rtt_ms: Optional[float] = None
    icmp_error: Optional[str] = None   # e.g. "type 3 code 13 from 10.0.0.1"

    @property
    def reachable(self) -> bool:
        return self.received > 0

    @property
    def loss_pct(self) -> float:
        if not self.sent:
            return 100.0
        return round(100.0 * (self.sent - self.received) / self.sent, 1)


@dataclass(frozen=True)
class ConnectResult:
    status: str                 # open | refused | timeout | unreachable | blocked | error
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def open(self) -> bool:
        return self.status == "open"


@dataclass(frozen=True)
class UdpResult:
    status: str                 # open | closed | filtered | no_response
    detail: Optional[str] = None


class HostInspector(Protocol):
    """What probes may ask of the host. LinuxHost is the real implementation."""

    def route_for(self, destination: str) -> Optional[Route]: ...
    def default_gateway(self, ipv6: bool = False) -> Optional[str]: ...
    def link_state(self, ifname: str) -> Optional[LinkState]: ...
    def is_wireless(self, ifname: str) -> bool: ...
    def wifi_associated(self, ifname: str) -> bool: ...
    def rfkill_radios(self) -> List[RadioBlock]: ...
    def neighbor_state(self, address: str, ifname: str) -> Optional[str]: ...
    def arp_resolve(self, address: str, ifname: str) -> Optional[str]: ...
    def addresses(self, ifname: str) -> Addresses: ...
    def icmp_echo(self, address: str) -> EchoResult: ...
    def tcp_connect(self, address: str, port: int, ifname: Optional[str] = None) -> ConnectResult: ...
    def udp_probe(self, address: str, port: int) -> UdpResult: ...
    def local_listener(self, port: int, protocol: str) -> bool: ...
    def firewall_mechanism(self) -> Optional[str]: ...
    def firewall_ruleset(self, mechanism: str, ipv6: bool = False) -> RulesetSummary: ...


def is_ipv6(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).version == 6
    except ValueError:
        return False


def _describe_icmp_error(reply) -> str:
    """Human-friendly tag for an ICMP error that answered one of our probes."""
    src = reply[IPv6].src if reply.haslayer(IPv6) else reply[IP].src
    if reply.haslayer(ICMP):
        return f"type {reply[ICMP].type} code {reply[ICMP].code} from {src}"
    if reply.haslayer(ICMPv6DestUnreach):
        return f"icmpv6 unreachable code {reply[ICMPv6DestUnreach].code} from {src}"
    return f"{reply.summary()} from {src}"


class LinuxHost:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # ----- command runner -----
    def _run(self, args: Sequence[str]) -> str:
        tool = args[0]
        if shutil.which(tool) is None:
            raise ToolMissing(f"{tool} not found in PATH")
        logger.debug("exec: %s", " ".join(args))
        try:
            proc = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=self.settings.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(f"{tool} did not answer within {exc.timeout}s") from exc
        except PermissionError as exc:
            raise AccessDenied(f"{tool}: {exc}") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            if any(marker in stderr.lower() for marker in _PERMISSION_MARKERS):
                raise AccessDenied(f"{tool}: {stderr}")
            raise CommandFailed(tool, proc.returncode, stderr)
        return proc.stdout

    def _run_or_empty(self, args: Sequence[str]) -> str:
        """Like _run, but a non-zero exit just means "nothing to report"."""
        try:
            return self._run(args)
        except CommandFailed as exc:
            logger.debug("%s", exc)
            return ""

    # ----- link / routing -----
    def route_for(self, destination: str) -> Optional[Route]:
        # "RTNETLINK answers: Network is unreachable" is a non-zero exit
        return parse.parse_route_get(self._run_or_empty(["ip", "-j", "route", "get", destination]))

    def default_gateway(self, ipv6: bool = False) -> Optional[str]:
        family = "-6" if ipv6 else "-4"
        return parse.parse_default_gateway(self._run_or_empty(["ip", family, "-j", "route", "show", "default"]))

    def link_state(self, ifname: str) -> Optional[LinkState]:
        return parse.parse_link_show(self._run_or_empty(["ip", "-j", "link", "show", "dev", ifname]))

    def is_wireless(self, ifname: str) -> bool:
        base = os.path.join("/sys/class/net", ifname)
        return os.path.isdir(os.path.join(base, "wireless")) or os.path.exists(os.path.join(base, "phy80211"))

    def wifi_associated(self, ifname: str) -> bool:
        return parse.parse_iw_link(self._run(["iw", "dev", ifname, "link"]))

    def rfkill_radios(self) -> List[RadioBlock]:
        return parse.parse_rfkill_list(self._run(["rfkill", "list"]))

    def neighbor_state(self, address: str, ifname: str) -> Optional[str]:
        return parse.parse_neigh_show(self._run_or_empty(["ip", "-j", "neigh", "show", address, "dev", ifname]))

    def arp_resolve(self, address: str, ifname: str) -> Optional[str]:
        """Broadcast an ARP who-has on `ifname`; returns the answering MAC or None."""
        if is_ipv6(address):
            return None
        try:
            answered, _ = srp(
                Ether(dst="ff:ff:ff:ff:ff:ff") / ARP(pdst=address),
                iface=ifname,
                timeout=self.settings.arp_timeout,
                verbose=0,
            )
        except PermissionError as exc:
            raise AccessDenied(f"raw L2 socket: {exc}") from exc
        except OSError as exc:
            raise CapabilityUnavailable(f"raw L2 socket on {ifname}: {exc}") from exc
        for _, reply in answered:
            return reply[ARP].hwsrc
        return None

    def addresses(self, ifname: str) -> Addresses:
        return parse.parse_addr_show(self._run_or_empty(["ip", "-j", "addr", "show", "dev", ifname]))

    # ----- reachability -----
    def icmp_echo(self, address: str) -> EchoResult:
        count = self.settings.icmp_count
        ident = os.getpid() & 0xFFFF
        if is_ipv6(address):
            probes = [IPv6(dst=address) / ICMPv6EchoRequest(id=ident, seq=i) for i in range(count)]
        else:
            probes = [IP(dst=address) / ICMP(id=ident, seq=i) for i in range(count)]
        try:
            answered, _ = sr(probes, timeout=self.settings.icmp_timeout, verbose=0)
        except PermissionError as exc:
            raise AccessDenied(f"raw ICMP socket: {exc}") from exc
        except OSError as exc:
            raise CapabilityUnavailable(f"raw ICMP socket: {exc}") from exc

        rtts: List[float] = []
        icmp_error = None
        for sent, reply in answered:
            if reply.haslayer(ICMPv6EchoReply) or (reply.haslayer(ICMP) and reply[ICMP].type == 0):
                rtts.append((float(reply.time) - float(sent.sent_time)) * 1000.0)
            elif icmp_error is None:
                icmp_error = _describe_icmp_error(reply)
        avg = round(sum(rtts) / len(rtts), 3) if rtts else None
        return EchoResult(address=address, sent=count, received=len(rtts), avg_rtt_ms=avg, icmp_error=icmp_error)

    def tcp_connect(self, address: str, port: int, ifname: Optional[str] = None) -> ConnectResult:
        family = socket.AF_INET6 if is_ipv6(address) else socket.AF_INET
        timeout = self.settings.connect_timeout
        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError as exc:
            raise CapabilityUnavailable(f"cannot open TCP socket: {exc}") from exc
        with sock:
            sock.settimeout(timeout)
            if ifname:
                try:
                    sock.setsockopt(socket.SOL_SOCKET, SO_BINDTODEVICE, ifname.encode())
                except PermissionError as exc:
                    raise AccessDenied(f"SO_BINDTODEVICE {ifname}: {exc}") from exc
                except OSError as exc:
                    logger.debug("cannot bind to %s, connecting unbound: %s", ifname, exc)
            start = time.monotonic()
            try:
                sock.connect((address, port))
            except socket.timeout:
                return ConnectResult("timeout", error=f"no answer within {timeout}s")
            except ConnectionRefusedError:
                return ConnectResult("refused", error="connection refused (RST)")
            except OSError as exc:
                if exc.errno == errno.ETIMEDOUT:
                    return ConnectResult("timeout", error=os.strerror(exc.errno))
                if exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
                    return ConnectResult("unreachable", error=os.strerror(exc.errno))
                if exc.errno in (errno.EPERM, errno.EACCES):
                    # local netfilter DROP/REJECT on OUTPUT surfaces as EPERM
                    return ConnectResult("blocked", error=f"rejected locally: {os.strerror(exc.errno)}")
                return ConnectResult("error", error=str(exc))
            latency = round((time.monotonic() - start) * 1000.0, 3)
        return ConnectResult("open", latency_ms=latency)

    def udp_probe(self, address: str, port: int) -> UdpResult:
        """Send one datagram and read what comes back (UDP reply, ICMP error, or nothing)."""
        ip_layer = IPv6(dst=address) if is_ipv6(address) else IP(dst=address)
        try:
            reply = sr1(ip_layer / UDP(sport=RandShort(), dport=port), timeout=self.settings.connect_timeout, verbose=0)
        except PermissionError as exc:
            raise AccessDenied(f"raw UDP socket: {exc}") from exc
        except OSError as exc:
            raise CapabilityUnavailable(f"raw UDP socket: {exc}") from exc

        if reply is None:
            return UdpResult("no_response")
        if reply.haslayer(UDP) and not (reply.haslayer(ICMP) or reply.haslayer(ICMPv6DestUnreach)):
            return UdpResult("open")
        if reply.haslayer(ICMP) and reply[ICMP].type == 3:
            code = reply[ICMP].code
            if code == ICMP_PORT_UNREACHABLE:
                return UdpResult("closed", _describe_icmp_error(reply))
            if code in ICMP_FILTERED_CODES:
                return UdpResult("filtered", _describe_icmp_error(reply))
        if reply.haslayer(ICMPv6DestUnreach):
            code = reply[ICMPv6DestUnreach].code
            if code == ICMPV6_PORT_UNREACHABLE:
                return UdpResult("closed", _describe_icmp_error(reply))
            if code == ICMPV6_ADMIN_PROHIBITED:
                return UdpResult("filtered", _describe_icmp_error(reply))
        return UdpResult("filtered", _describe_icmp_error(reply))

    def local_listener(self, port: int, protocol: str) -> bool:
        flag = "-u" if protocol == "udp" else "-t"
        return parse.parse_ss_listening(self._run(["ss", "-H", "-ln", flag]), port)

    # ----- firewall -----
    def firewall_mechanism(self) -> Optional[str]:
        """Which firewall front-end is active, front-ends before raw backends."""
        if shutil.which("ufw") and "Status: active" in self._run_or_empty(["ufw", "status"]):
            return "ufw"
        if shutil.which("firewall-cmd") and self._run_or_empty(["firewall-cmd", "--state"]).strip() == "running":
            return "firewalld"
        if shutil.which("nft") and self._run_or_empty(["nft", "list", "tables"]).strip():
            return "nftables"
        if shutil.which("iptables"):
            summary = parse.parse_iptables_save(self._run_or_empty(["iptables", "-S"]))
            policies = {summary.outbound_policy, summary.inbound_policy} - {None, "accept"}
            if summary.rules or policies:
                return "iptables"
        return None

    def firewall_ruleset(self, mechanism: str, ipv6: bool = False) -> RulesetSummary:
        if mechanism == "ufw":
            return parse.parse_ufw_status(self._run(["ufw", "status", "verbose"]))
        if mechanism == "firewalld":
            return parse.parse_firewalld_zone(self._run(["firewall-cmd", "--list-all"]))
        if mechanism == "nftables":
            return parse.parse_nft_ruleset(self._run(["nft", "list", "ruleset"]))
        if mechanism == "iptables":
            return parse.parse_iptables_save(self._run(["ip6tables" if ipv6 else "iptables", "-S"]))
        raise ValueError(f"unknown firewall mechanism: {mechanism}")
