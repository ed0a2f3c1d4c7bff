"""
Layer probes: Link, Network, Transport, Policy.

Each probe walks its own checklist top-to-bottom and records what it sees into
a fresh LayerRecord. A failing check never stops the walk; only checks that
need an earlier result are skipped, and their facts are marked not applicable
so the report can tell "not checked" from "checked and empty".

Environment failures (a required tool missing, the kernel refusing a query,
a required probing primitive unusable) abort the probe: the returned record
then carries a single permission_denied / tooling_unavailable issue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from netperm.core.codes import IssueKind, Layer, Severity
from netperm.core.evidence import LayerRecord
from netperm.core.host import (
    AccessDenied,
    CapabilityUnavailable,
    CommandFailed,
    CommandTimeout,
    HostInspector,
    ToolMissing,
    is_ipv6,
)
from netperm.core.parse import (
    BLOCKING_ACTIONS,
    RESOLVED_NEIGHBOR_STATES,
    FirewallRule,
    Route,
    RulesetSummary,
    UnparseableOutput,
    address_in,
)
from netperm.core.preflight import Target

logger = logging.getLogger(__name__)

K = IssueKind


@dataclass(frozen=True)
class PathContext:
    """The routed path the Link probe found; later layers build on it."""

    interface: Optional[str] = None
    gateway: Optional[str] = None
    next_hop: Optional[str] = None
    loopback: bool = False

    @property
    def usable(self) -> bool:
        return bool(self.interface) and not self.loopback

    @classmethod
    def from_link_record(cls, record: LayerRecord) -> "PathContext":
        return cls(
            interface=record.value("routed_interface"),
            gateway=record.value("gateway"),
            next_hop=record.value("next_hop"),
            loopback=bool(record.value("loopback_routing", False)),
        )


class Probe:
    layer: Layer

    def __init__(self, host: HostInspector):
        self.host = host

    def run(self, target: Target, path: Optional[PathContext] = None) -> LayerRecord:
        record = LayerRecord(layer=self.layer)
        logger.debug("[%s] probing %s", self.layer.value, target)
        try:
            self.check(record, target, path or PathContext())
        except AccessDenied as exc:
            record = record.aborted(K.PERMISSION_DENIED, str(exc))
        except (ToolMissing, CapabilityUnavailable) as exc:
            record = record.aborted(K.TOOLING_UNAVAILABLE, str(exc))
        for issue in record.issues:
            level = logging.WARNING if issue.severity is Severity.ERROR else logging.INFO
            logger.log(level, "[%s] %s: %s", self.layer.value, issue.kind.value, issue.detail or "")
        return record.seal()

    def check(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        raise NotImplementedError

    # ----- helpers shared by the checklists -----
    @staticmethod
    def _skip(record: LayerRecord, names: Iterable[str], reason: str) -> None:
        for name in names:
            record.mark_not_applicable(name, reason)

    @staticmethod
    def _unreadable(record: LayerRecord, names: Iterable[str], exc: Exception, what: str) -> None:
        """A secondary check whose collaborator hung or answered something we cannot read."""
        if isinstance(exc, CommandTimeout):
            for name in names:
                record.mark_absent(name, str(exc))
            record.warning(K.TIMEOUT, f"{what} timed out; check skipped")
        elif isinstance(exc, ToolMissing):
            Probe._optional_tool_missing(record, names, exc)
        else:
            for name in names:
                record.mark_unparseable(name, str(exc))
            record.warning(K.UNPARSEABLE_OUTPUT, f"{what}: {exc}")

    @staticmethod
    def _optional_tool_missing(record: LayerRecord, names: Iterable[str], exc: Exception) -> None:
        for name in names:
            record.mark_not_applicable(name, str(exc))
        record.warning(K.CAPABILITY_UNAVAILABLE, f"{exc}; check skipped")


class LinkProbe(Probe):
    """Is frame-level communication with the next hop possible?"""

    layer = Layer.LINK

    def check(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        route = self._routed_interface(record, target)
        iface = route.dev if route is not None and not route.is_loopback else None
        wireless = self.host.is_wireless(iface) if iface else None

        self._radio_block(record, route is None, wireless)
        link_ok = self._link_state(record, iface)
        self._association(record, iface, wireless)
        next_hop = record.value("next_hop")
        self._neighbor(record, iface, next_hop, link_ok)

    def _routed_interface(self, record: LayerRecord, target: Target) -> Optional[Route]:
        path_facts = ("loopback_routing", "gateway", "next_hop")
        try:
            route = self.host.route_for(target.address)
        except CommandTimeout as exc:
            record.mark_absent("routed_interface", str(exc))
            record.error(K.TIMEOUT, f"route lookup for {target.address} timed out")
            self._skip(record, path_facts, "route lookup timed out")
            return None
        except UnparseableOutput as exc:
            record.mark_unparseable("routed_interface", str(exc))
            record.error(K.NO_INTERFACE, f"routing decision for {target.address} unreadable")
            self._skip(record, path_facts, "routing decision unreadable")
            return None

        if route is None or not route.dev:
            record.mark_absent("routed_interface")
            record.error(K.NO_INTERFACE, f"no routed interface found for {target.address}")
            self._skip(record, path_facts, "no route")
            return None

        record.record_fact("routed_interface", route.dev)
        record.record_fact("loopback_routing", route.is_loopback)
        if route.is_loopback:
            record.error(
                K.LOOPBACK_ROUTING,
                f"routing for {target.address} resolved to loopback ({route.dev}); "
                "external communication not applicable",
            )
            self._skip(record, ("gateway", "next_hop"), "routed via loopback")
            return route
        if route.gateway:
            record.record_fact("gateway", route.gateway)
        else:
            record.mark_absent("gateway", "destination is directly connected")
        record.record_fact("next_hop", route.gateway or target.address)
        return route

    def _radio_block(self, record: LayerRecord, unrouted: bool, wireless: Optional[bool]) -> None:
        names = ("rfkill_blocked", "rfkill_blocked_radios")
        try:
            radios = self.host.rfkill_radios()
        except ToolMissing as exc:
            self._optional_tool_missing(record, names, exc)
            return
        except (CommandTimeout, CommandFailed, UnparseableOutput) as exc:
            self._unreadable(record, names, exc, "rfkill list")
            return

        blocked = [r for r in radios if r.blocked and r.network_radio]
        record.record_fact("rfkill_blocked", bool(blocked))
        if not blocked:
            record.mark_absent("rfkill_blocked_radios")
            return
        names_txt = ", ".join(f"{r.device} ({'hard' if r.hard_blocked else 'soft'})" for r in blocked)
        record.record_fact("rfkill_blocked_radios", names_txt)
        detail = f"rfkill blocking detected: {names_txt}"
        if unrouted or wireless:
            record.error(K.RFKILL_BLOCKED, detail)
        else:
            # routed over a wired interface, the blocked radio is not on the path
            record.warning(K.RFKILL_BLOCKED, detail)

    def _link_state(self, record: LayerRecord, iface: Optional[str]) -> Optional[bool]:
        """Returns True when admin-up with carrier, False when not, None when unknown."""
        names = ("admin_state", "operstate", "carrier")
        if iface is None:
            self._skip(record, names, "no routed interface")
            return None
        try:
            state = self.host.link_state(iface)
        except (CommandTimeout, UnparseableOutput) as exc:
            self._unreadable(record, names, exc, f"ip link show {iface}")
            return None

        if state is None:
            for name in names:
                record.mark_absent(name)
            record.error(K.NO_INTERFACE, f"interface {iface} disappeared during the check")
            return False

        record.record_fact("admin_state", "UP" if state.admin_up else "DOWN")
        record.record_fact("operstate", state.operstate)
        if not state.admin_up:
            record.mark_not_applicable("carrier", f"{iface} is administratively down")
            record.error(K.INTERFACE_DOWN, f"interface {iface} is DOWN")
            return False
        record.record_fact("carrier", state.carrier)
        if not state.carrier:
            record.error(K.NO_CARRIER, f"no carrier on {iface} (LOWER_UP absent)")
            return False
        return True

    def _association(self, record: LayerRecord, iface: Optional[str], wireless: Optional[bool]) -> None:
        if iface is None:
            self._skip(record, ("wireless", "wifi_associated"), "no routed interface")
            return
        record.record_fact("wireless", bool(wireless))
        if not wireless:
            record.mark_not_applicable("wifi_associated", "interface is not wireless")
            return
        try:
            associated = self.host.wifi_associated(iface)
        except ToolMissing as exc:
            self._optional_tool_missing(record, ("wifi_associated",), exc)
            return
        except (CommandTimeout, CommandFailed, UnparseableOutput) as exc:
            self._unreadable(record, ("wifi_associated",), exc, f"iw dev {iface} link")
            return
        record.record_fact("wifi_associated", associated)
        if not associated:
            record.error(K.WIFI_NOT_ASSOCIATED, f"wireless interface {iface} not associated")

    def _neighbor(self, record: LayerRecord, iface: Optional[str], next_hop: Optional[str],
                  link_ok: Optional[bool]) -> None:
        names = ("neighbor_state", "arp_reply")
        if iface is None or not next_hop:
            self._skip(record, names, "no resolved next hop")
            return
        if link_ok is False:
            self._skip(record, names, f"link on {iface} is not up")
            return
        try:
            state = self.host.neighbor_state(next_hop, iface)
        except (CommandTimeout, UnparseableOutput) as exc:
            self._unreadable(record, names, exc, f"ip neigh show {next_hop}")
            return

        if state:
            record.record_fact("neighbor_state", state)
        else:
            record.mark_absent("neighbor_state", "no neighbor entry")
        if state in RESOLVED_NEIGHBOR_STATES:
            record.mark_not_applicable("arp_reply", f"neighbor entry already {state}")
            return

        # cold or failed entry: ask on the wire before blaming L2
        try:
            mac = self.host.arp_resolve(next_hop, iface)
        except CapabilityUnavailable as exc:
            self._optional_tool_missing(record, ("arp_reply",), exc)
            mac = None
            if state is None:
                return
        else:
            if mac:
                record.record_fact("arp_reply", mac)
                return
            record.mark_absent("arp_reply", "IPv6 next hop, ARP not used" if is_ipv6(next_hop) else "no ARP reply")
            if is_ipv6(next_hop) and state is None:
                record.warning(K.NEIGHBOR_UNREACHABLE, f"no IPv6 neighbor entry for {next_hop} yet")
                return
        record.error(
            K.NEIGHBOR_UNREACHABLE,
            f"next hop {next_hop} unreachable at L2 on {iface} (neighbor state: {state or 'none'})",
        )


class NetworkProbe(Probe):
    """Can IP packets be routed to the destination?"""

    layer = Layer.NETWORK

    def check(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        route = self._route(record, target)
        self._addresses(record, path)
        self._default_gateway(record, target)
        gateway = route.gateway if route is not None and not route.is_loopback else None
        if gateway:
            self._echo(record, "gateway", gateway, K.GATEWAY_UNREACHABLE)
        else:
            if route is None:
                reason = "no route"
            elif route.is_loopback:
                reason = "routed via loopback"
            else:
                reason = "destination is directly connected"
            self._skip(record, ("gateway_reachable", "gateway_loss_pct", "gateway_rtt_ms", "gateway_icmp_error"), reason)
        # measured even when the gateway did not answer
        self._echo(record, "destination", target.address, K.DESTINATION_UNREACHABLE)

    def _route(self, record: LayerRecord, target: Target) -> Optional[Route]:
        names = ("route", "route_source", "route_gateway")
        try:
            route = self.host.route_for(target.address)
        except CommandTimeout as exc:
            record.mark_absent("route", str(exc))
            record.error(K.TIMEOUT, f"route lookup for {target.address} timed out")
            self._skip(record, names[1:], "route lookup timed out")
            return None
        except UnparseableOutput as exc:
            record.mark_unparseable("route", str(exc))
            record.error(K.NO_ROUTE, f"routing decision for {target.address} unreadable")
            self._skip(record, names[1:], "routing decision unreadable")
            return None

        if route is None:
            record.mark_absent("route")
            record.error(K.NO_ROUTE, f"no route to {target.address} (check routing table with 'ip route')")
            self._skip(record, names[1:], "no route")
            return None

        desc = f"{route.route_type} dev {route.dev}"
        if route.gateway:
            desc += f" via {route.gateway}"
        record.record_fact("route", desc)
        if route.prefsrc:
            record.record_fact("route_source", route.prefsrc)
        else:
            record.mark_absent("route_source")
        if route.gateway:
            record.record_fact("route_gateway", route.gateway)
        else:
            record.mark_absent("route_gateway", "destination is directly connected")
        if route.is_loopback:
            record.error(
                K.LOOPBACK_ROUTING,
                f"routing resolved to loopback ({route.dev}), external communication not applicable",
            )
        return route

    def _addresses(self, record: LayerRecord, path: PathContext) -> None:
        names = ("ipv4_addresses", "ipv6_addresses")
        if not path.usable:
            reason = "routed via loopback" if path.loopback else "no routed interface from link layer"
            self._skip(record, names, reason)
            return
        iface = path.interface
        try:
            addrs = self.host.addresses(iface)
        except (CommandTimeout, UnparseableOutput) as exc:
            self._unreadable(record, names, exc, f"ip addr show {iface}")
            return

        if addrs.ipv4:
            record.record_fact("ipv4_addresses", ", ".join(addrs.ipv4))
        else:
            record.mark_absent("ipv4_addresses")
        if addrs.ipv6:
            record.record_fact("ipv6_addresses", ", ".join(addrs.ipv6))
        else:
            record.mark_absent("ipv6_addresses", "link-local only" if addrs.ipv6_link_local else None)

        if not addrs.any_usable:
            record.error(
                K.NO_IP_ADDRESS,
                f"no IP address assigned to {iface} (use 'dhclient {iface}' or configure a static IP)",
            )
        elif not addrs.ipv6:
            record.warning(K.NO_IPV6, f"no global IPv6 address on {iface}")

    def _default_gateway(self, record: LayerRecord, target: Target) -> None:
        try:
            gateway = self.host.default_gateway(ipv6=target.ipv6)
        except (CommandTimeout, UnparseableOutput) as exc:
            self._unreadable(record, ("default_gateway",), exc, "default route lookup")
            return
        if gateway:
            record.record_fact("default_gateway", gateway)
        else:
            record.mark_absent("default_gateway")
            record.warning(K.NO_DEFAULT_GATEWAY, "host has no default route")

    def _echo(self, record: LayerRecord, prefix: str, address: str, kind: IssueKind) -> None:
        names = (f"{prefix}_reachable", f"{prefix}_loss_pct", f"{prefix}_rtt_ms", f"{prefix}_icmp_error")
        try:
            result = self.host.icmp_echo(address)
        except CapabilityUnavailable as exc:
            self._skip(record, names, str(exc))
            record.warning(K.CAPABILITY_UNAVAILABLE, f"ICMP echo unavailable, {prefix} test skipped: {exc}")
            return

        record.record_fact(names[0], result.reachable)
        record.record_fact(names[1], result.loss_pct)
        if result.avg_rtt_ms is not None:
            record.record_fact(names[2], result.avg_rtt_ms)
        else:
            record.mark_absent(names[2])
        if result.icmp_error:
            record.record_fact(names[3], result.icmp_error)
        else:
            record.mark_absent(names[3])

        if not result.reachable:
            detail = f"{prefix} {address} unreachable via ICMP"
            if result.icmp_error:
                detail += f" ({result.icmp_error})"
            record.error(kind, detail)


class TransportProbe(Probe):
    """Does the destination port accept our transport connection?"""

    layer = Layer.TRANSPORT

    def check(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        record.record_fact("protocol", target.protocol)
        record.record_fact("port", target.port)
        if target.protocol == "udp":
            self._udp(record, target)
        else:
            self._tcp(record, target, path)
        self._listener(record, target)

    def _tcp(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        iface = path.interface if path.usable else None
        if iface:
            record.record_fact("bound_interface", iface)
        else:
            record.mark_not_applicable("bound_interface", "no routed interface from link layer")

        # CapabilityUnavailable here propagates: TCP connect is the required primitive
        result = self.host.tcp_connect(target.address, target.port, iface)
        record.record_fact("connect_status", result.status)
        if result.latency_ms is not None:
            record.record_fact("connect_latency_ms", result.latency_ms)
        else:
            record.mark_absent("connect_latency_ms")

        endpoint = f"{target.address}:{target.port}"
        if result.open:
            return
        if result.status == "timeout":
            record.error(K.TIMEOUT, f"TCP connection to {endpoint} timed out ({result.error})")
        else:
            record.error(K.PORT_CLOSED, f"TCP port {target.port} closed or unreachable on {target.address}: {result.error}")

    def _udp(self, record: LayerRecord, target: Target) -> None:
        record.mark_not_applicable("bound_interface", "UDP probe leaves interface choice to the kernel")
        result = self.host.udp_probe(target.address, target.port)
        record.record_fact("udp_status", result.status)
        if result.detail:
            record.record_fact("udp_reply", result.detail)
        else:
            record.mark_absent("udp_reply")

        endpoint = f"{target.address}:{target.port}"
        if result.status in ("closed", "filtered"):
            record.error(K.PORT_CLOSED, f"UDP {endpoint} {result.status}: {result.detail}")
        elif result.status == "no_response":
            record.warning(K.UDP_UNCONFIRMED, f"UDP packet sent to {endpoint}, no reply (open or silently filtered)")

    def _listener(self, record: LayerRecord, target: Target) -> None:
        try:
            listening = self.host.local_listener(target.port, target.protocol)
        except ToolMissing as exc:
            self._optional_tool_missing(record, ("local_listener",), exc)
            return
        except (CommandTimeout, CommandFailed) as exc:
            self._unreadable(record, ("local_listener",), exc, "ss listener lookup")
            return
        record.record_fact("local_listener", listening)


_BLOCK_VERBS = {"drop": "drops", "reject": "rejects", "deny": "denies"}


def first_match(summary: RulesetSummary, target: Target) -> Optional[FirewallRule]:
    """First unconditional outbound rule that covers the target, in evaluation order."""
    for rule in summary.rules:
        if rule.conditional or rule.direction not in ("out", "any"):
            continue
        if not address_in(target.address, rule.destination):
            continue
        if rule.protocol not in (None, "all", target.protocol):
            continue
        if rule.port is not None and rule.port != target.port:
            continue
        return rule
    return None


class PolicyProbe(Probe):
    """Does the host firewall permit the traffic?"""

    layer = Layer.POLICY

    RULE_FACTS = ("outbound_policy", "inbound_policy", "rule_count", "matched_rule")

    def check(self, record: LayerRecord, target: Target, path: PathContext) -> None:
        try:
            mechanism = self.host.firewall_mechanism()
        except (CommandTimeout, ToolMissing, UnparseableOutput) as exc:
            self._unreadable(record, ("firewall",), exc, "firewall detection")
            self._skip(record, self.RULE_FACTS, "firewall mechanism unknown")
            return
        if mechanism is None:
            record.mark_absent("firewall", "no active firewall detected")
            record.warning(K.NO_FIREWALL, "no active firewall detected")
            self._skip(record, self.RULE_FACTS, "no firewall")
            return
        record.record_fact("firewall", mechanism)

        try:
            summary = self.host.firewall_ruleset(mechanism, ipv6=target.ipv6)
        except (CommandTimeout, CommandFailed, ToolMissing, UnparseableOutput) as exc:
            self._unreadable(record, ("ruleset",), exc, f"{mechanism} ruleset dump")
            self._skip(record, self.RULE_FACTS, "ruleset unavailable")
            return
        self._evaluate(record, summary, target)

    def _evaluate(self, record: LayerRecord, summary: RulesetSummary, target: Target) -> None:
        mech = summary.mechanism
        endpoint = f"{target.address}:{target.port}/{target.protocol}"
        for name, policy in (("outbound_policy", summary.outbound_policy), ("inbound_policy", summary.inbound_policy)):
            if policy:
                record.record_fact(name, policy)
            else:
                record.mark_absent(name)
        record.record_fact("rule_count", len(summary.rules))

        rule = first_match(summary, target)
        if rule is not None:
            record.record_fact("matched_rule", rule.raw)
            if rule.blocking:
                record.error(
                    K.EXPLICIT_BLOCK_RULE,
                    f"{mech} rule {_BLOCK_VERBS[rule.action]} traffic to {endpoint}: {rule.raw}",
                )
        else:
            record.mark_absent("matched_rule", "no rule covers the destination")
            if summary.outbound_policy in BLOCKING_ACTIONS:
                record.error(
                    K.DEFAULT_POLICY_DROP,
                    f"{mech} outbound default policy is {summary.outbound_policy} "
                    f"and no rule allows {endpoint}",
                )

        if summary.inbound_policy in BLOCKING_ACTIONS:
            record.warning(
                K.INBOUND_POLICY_DROP,
                f"{mech} inbound default policy is {summary.inbound_policy}; replies rely on connection tracking",
            )
        if mech == "firewalld":
            record.record_fact("zone", summary.zone)
            wanted = f"{target.port}/{target.protocol}"
            if wanted not in summary.allowed_ports:
                record.warning(K.PORT_NOT_ALLOWED, f"port {wanted} not explicitly allowed in zone {summary.zone}")
