"""
Typed fact extraction from OS tool output.

What this does:
- Turns iproute2 JSON (`ip -j ...`) into Route / LinkState / Addresses values
- Reads the plain-text output of rfkill, iw, ss and the firewall front-ends
- Raises UnparseableOutput instead of guessing when the text is not what we expect

Nothing outside this module looks at raw tool output; probes only see the
small typed values defined here.
"""
from __future__ import annotations

import ipaddress
import json
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

# Neighbor states that mean the next hop's L2 address is (or was recently) known
RESOLVED_NEIGHBOR_STATES = frozenset({"REACHABLE", "STALE", "DELAY", "PROBE", "PERMANENT", "NOARP"})

BLOCKING_ACTIONS = frozenset({"drop", "reject", "deny"})
# radio types whose block can take a routed interface offline
NETWORK_RADIO_TYPES = frozenset({"wlan", "wireless lan", "wwan", "wireless wan"})


class UnparseableOutput(ValueError):
    """Tool output did not have the expected shape."""


# ----- value types -----
@dataclass(frozen=True)
class Route:
    dev: Optional[str]
    gateway: Optional[str] = None
    prefsrc: Optional[str] = None
    route_type: str = "unicast"

    @property
    def is_loopback(self) -> bool:
        return self.dev == "lo" or self.route_type == "local"


@dataclass(frozen=True)
class LinkState:
    ifname: str
    flags: Tuple[str, ...]
    operstate: str = "UNKNOWN"

    @property
    def admin_up(self) -> bool:
        return "UP" in self.flags

    @property
    def carrier(self) -> bool:
        return "LOWER_UP" in self.flags


@dataclass(frozen=True)
class Addresses:
    ipv4: Tuple[str, ...] = ()
    ipv6: Tuple[str, ...] = ()          # global / non-link-local only
    ipv6_link_local: Tuple[str, ...] = ()

    @property
    def any_usable(self) -> bool:
        return bool(self.ipv4 or self.ipv6)


@dataclass(frozen=True)
class RadioBlock:
    index: int
    device: str
    radio_type: str
    soft_blocked: bool
    hard_blocked: bool

    @property
    def blocked(self) -> bool:
        return self.soft_blocked or self.hard_blocked

    @property
    def network_radio(self) -> bool:
        return self.radio_type.lower() in NETWORK_RADIO_TYPES


@dataclass(frozen=True)
class FirewallRule:
    action: str                       # accept | drop | reject | deny
    direction: str = "any"            # out | in | forward | any
    destination: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None
    conditional: bool = False         # carries matchers we do not model (state, mark, ...)
    raw: str = ""

    @property
    def blocking(self) -> bool:
        return self.action in BLOCKING_ACTIONS


@dataclass
class RulesetSummary:
    mechanism: str
    outbound_policy: Optional[str] = None   # accept | drop | reject | deny
    inbound_policy: Optional[str] = None
    rules: List[FirewallRule] = field(default_factory=list)
    allowed_ports: List[str] = field(default_factory=list)   # firewalld zone ports, e.g. "80/tcp"
    zone: Optional[str] = None


# ----- iproute2 (JSON) -----
def _load_json_list(text: str, what: str) -> List[Any]:
    text = (text or "").strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise UnparseableOutput(f"{what}: not JSON ({exc})") from exc
    if not isinstance(data, list):
        raise UnparseableOutput(f"{what}: expected a JSON list")
    return data


def parse_route_get(text: str) -> Optional[Route]:
    """`ip -j route get <dst>` -> Route, or None when the kernel returned nothing."""
    entries = _load_json_list(text, "ip route get")
    if not entries:
        return None
    entry = entries[0]
    if not isinstance(entry, dict):
        raise UnparseableOutput("ip route get: entry is not an object")
    route_type = entry.get("type", "unicast")
    if route_type in ("unreachable", "prohibit", "blackhole", "throw"):
        return None
    return Route(
        dev=entry.get("dev"),
        gateway=entry.get("gateway"),
        prefsrc=entry.get("prefsrc"),
        route_type=route_type,
    )


def parse_default_gateway(text: str) -> Optional[str]:
    """`ip -j route show default` -> first default gateway address."""
    for entry in _load_json_list(text, "ip route show default"):
        if isinstance(entry, dict) and entry.get("gateway"):
            return entry["gateway"]
    return None


def parse_link_show(text: str) -> Optional[LinkState]:
    """`ip -j link show <if>` -> LinkState (None when the interface is gone)."""
    entries = _load_json_list(text, "ip link show")
    if not entries:
        return None
    entry = entries[0]
    if not isinstance(entry, dict) or "flags" not in entry:
        raise UnparseableOutput("ip link show: missing flags")
    return LinkState(
        ifname=entry.get("ifname", ""),
        flags=tuple(entry["flags"]),
        operstate=entry.get("operstate", "UNKNOWN"),
    )


def parse_addr_show(text: str) -> Addresses:
    """`ip -j addr show dev <if>` -> assigned addresses split by family."""
    ipv4: List[str] = []
    ipv6: List[str] = []
    link_local: List[str] = []
    for entry in _load_json_list(text, "ip addr show"):
        if not isinstance(entry, dict):
            raise UnparseableOutput("ip addr show: entry is not an object")
        for info in entry.get("addr_info", []):
            local = info.get("local")
            if not local:
                continue
            family = info.get("family")
            if family == "inet":
                ipv4.append(local)
            elif family == "inet6":
                if info.get("scope") == "link" or local.lower().startswith("fe80:"):
                    link_local.append(local)
                else:
                    ipv6.append(local)
    return Addresses(ipv4=tuple(ipv4), ipv6=tuple(ipv6), ipv6_link_local=tuple(link_local))


def parse_neigh_show(text: str) -> Optional[str]:
    """`ip -j neigh show <addr> dev <if>` -> neighbor state, None when no entry."""
    entries = _load_json_list(text, "ip neigh show")
    if not entries:
        return None
    state = entries[0].get("state") if isinstance(entries[0], dict) else None
    if isinstance(state, list):
        return state[0] if state else None
    return state


# ----- rfkill / iw / ss -----
_RFKILL_HEADER = re.compile(r"^(\d+):\s*([^:]+):\s*(.+)$")


def parse_rfkill_list(text: str) -> List[RadioBlock]:
    """`rfkill list` plain output -> one RadioBlock per device."""
    radios: List[RadioBlock] = []
    current: Optional[dict] = None
    for line in (text or "").splitlines():
        header = _RFKILL_HEADER.match(line.strip())
        if header and not line.startswith(("\t", " ")):
            if current:
                radios.append(RadioBlock(**current))
            current = {
                "index": int(header.group(1)),
                "device": header.group(2).strip(),
                "radio_type": header.group(3).strip(),
                "soft_blocked": False,
                "hard_blocked": False,
            }
            continue
        if current is None:
            continue
        stripped = line.strip().lower()
        if stripped.startswith("soft blocked:"):
            current["soft_blocked"] = stripped.endswith("yes")
        elif stripped.startswith("hard blocked:"):
            current["hard_blocked"] = stripped.endswith("yes")
    if current:
        radios.append(RadioBlock(**current))
    if text and text.strip() and not radios:
        raise UnparseableOutput("rfkill list: no device headers")
    return radios


def parse_iw_link(text: str) -> bool:
    """`iw dev <if> link` -> True when associated to an access point."""
    text = (text or "").strip()
    if text.startswith("Connected to"):
        return True
    if text.startswith("Not connected"):
        return False
    raise UnparseableOutput("iw link: unexpected output")


def parse_ss_listening(text: str, port: int) -> bool:
    """`ss -H -ln -t|-u` -> True if any local socket listens on `port`."""
    for line in (text or "").splitlines():
        cols = line.split()
        if len(cols) < 4:
            continue
        local = cols[3]
        _, _, local_port = local.rpartition(":")
        if local_port == str(port):
            return True
    return False



# ----- firewall front-ends -----
def _normalize_action(token: str) -> Optional[str]:
    token = token.lower()
    if token in ("accept", "allow", "limit"):
        return "accept"
    if token in ("drop", "reject", "deny"):
        return token
    return None


def _port_value(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    token = token.split("/")[0]
    return int(token) if token.isdigit() else None


def _looks_like_address(token: str) -> bool:
    try:
        ipaddress.ip_network(token, strict=False)
    except ValueError:
        return False
    return True


# iptables -S options that narrow a rule to things we do not model
_IPT_CONDITIONAL = frozenset({"-m", "-s", "-i", "-o", "--sport", "!"})
_IPT_NEUTRAL_MODULES = frozenset({"comment", "tcp", "udp"})
_IPT_CHAIN_DIRECTION = {"OUTPUT": "out", "INPUT": "in", "FORWARD": "forward"}


def parse_iptables_save(text: str) -> RulesetSummary:
    """`iptables -S` -> RulesetSummary with rules in evaluation order.

    Only the built-in OUTPUT/INPUT/FORWARD chains are read; user chains are
    reached through jumps we do not follow.
    """
    summary = RulesetSummary(mechanism="iptables")
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            tokens = shlex.split(line)
        except ValueError as exc:
            raise UnparseableOutput(f"iptables -S: {exc}") from exc
        if tokens[0] == "-P" and len(tokens) >= 3:
            if tokens[1] == "OUTPUT":
                summary.outbound_policy = _normalize_action(tokens[2])
            elif tokens[1] == "INPUT":
                summary.inbound_policy = _normalize_action(tokens[2])
            continue
        if tokens[0] != "-A" or len(tokens) < 2:
            continue
        direction = _IPT_CHAIN_DIRECTION.get(tokens[1])
        if direction is None:
            continue

        action = destination = protocol = None
        port = None
        conditional = False
        i = 2
        while i < len(tokens):
            tok = tokens[i]
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            if tok == "-j":
                action = _normalize_action(nxt or "")
            elif tok == "-d":
                destination = nxt
            elif tok == "-p":
                protocol = (nxt or "").lower() or None
            elif tok == "--dport":
                port = _port_value(nxt)
                conditional = conditional or port is None   # ranges, lists
            elif tok == "-m" and nxt in _IPT_NEUTRAL_MODULES:
                pass
            elif tok in _IPT_CONDITIONAL:
                conditional = True
            else:
                i += 1
                continue
            i += 2 if tok != "!" else 1
        if action is None:
            continue   # jumps to user chains, LOG, ...
        summary.rules.append(FirewallRule(
            action=action, direction=direction, destination=destination,
            protocol=protocol, port=port, conditional=conditional, raw=line,
        ))
    return summary


_NFT_CHAIN = re.compile(r"^chain\s+(\S+)\s*\{")
_NFT_HOOK = re.compile(r"\btype\s+(\w+)\s+hook\s+(\w+)")
_NFT_POLICY = re.compile(r"\bpolicy\s+(\w+)")
_NFT_DADDR = re.compile(r"\bip6?\s+daddr\s+(\S+)")
_NFT_DPORT = re.compile(r"\b(tcp|udp)\s+dport\s+([^\s;]+)")
_NFT_VERDICT = re.compile(r"\b(accept|drop|reject)\b")
_NFT_CONDITIONAL = re.compile(r"\b(ct\s+state|iifname|oifname|saddr|meta\s+mark|sport|jump|goto)\b|[{!]")
_NFT_HOOK_DIRECTION = {"output": "out", "input": "in", "forward": "forward"}


def _stricter_policy(current: Optional[str], new: Optional[str]) -> Optional[str]:
    # a packet has to get through every base chain on its hook
    if current in BLOCKING_ACTIONS:
        return current
    return new


def parse_nft_ruleset(text: str) -> RulesetSummary:
    """`nft list ruleset` -> RulesetSummary for filter base chains hooked on input/output/forward.

    nat and route chains on the same hooks neither filter nor carry a
    meaningful policy, so they are skipped.
    """
    summary = RulesetSummary(mechanism="nftables")
    direction: Optional[str] = None
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if _NFT_CHAIN.match(line):
            direction = None
            continue
        if line.startswith("type ") and "hook" in line:
            header = _NFT_HOOK.search(line)
            if header is None:
                raise UnparseableOutput(f"nft: cannot read chain header {line!r}")
            if header.group(1).lower() != "filter":
                direction = None
                continue
            direction = _NFT_HOOK_DIRECTION.get(header.group(2).lower())
            policy = _NFT_POLICY.search(line)
            policy_action = _normalize_action(policy.group(1)) if policy else "accept"
            if direction == "out":
                summary.outbound_policy = _stricter_policy(summary.outbound_policy, policy_action)
            elif direction == "in":
                summary.inbound_policy = _stricter_policy(summary.inbound_policy, policy_action)
            continue
        if direction is None or line.startswith(("table ", "set ", "map ", "}")):
            continue
        verdict = _NFT_VERDICT.search(line)
        if verdict is None:
            continue
        daddr = _NFT_DADDR.search(line)
        dport = _NFT_DPORT.search(line)
        port = _port_value(dport.group(2)) if dport else None
        summary.rules.append(FirewallRule(
            action=verdict.group(1),
            direction=direction,
            destination=daddr.group(1) if daddr else None,
            protocol=dport.group(1) if dport else None,
            port=port,
            # ranges and named ports
            conditional=bool(_NFT_CONDITIONAL.search(line)) or (dport is not None and port is None),
            raw=line,
        ))
    return summary


_UFW_DEFAULT = re.compile(r"^Default:\s*(.+)$", re.IGNORECASE)
_UFW_RULE = re.compile(
    r"^(?P<to>.+?)\s{2,}(?P<action>ALLOW|DENY|REJECT|LIMIT)(?:\s+(?P<dir>IN|OUT|FWD))?\s{2,}(?P<frm>.+)$"
)
_UFW_DIRECTION = {"IN": "in", "OUT": "out", "FWD": "forward"}


def parse_ufw_status(text: str) -> RulesetSummary:
    """`ufw status verbose` -> RulesetSummary."""
    summary = RulesetSummary(mechanism="ufw")
    for line in (text or "").splitlines():
        line = line.strip()
        default = _UFW_DEFAULT.match(line)
        if default:
            for part in default.group(1).split(","):
                words = part.split()
                if len(words) < 2:
                    continue
                if words[1] == "(outgoing)":
                    summary.outbound_policy = _normalize_action(words[0])
                elif words[1] == "(incoming)":
                    summary.inbound_policy = _normalize_action(words[0])
            continue
        rule = _UFW_RULE.match(line)
        if not rule:
            continue
        to = rule.group("to")
        destination = protocol = None
        port = None
        conditional = not rule.group("frm").lower().startswith("anywhere") or " on " in to
        for token in to.replace("(v6)", "").split():
            name, _, proto = token.partition("/")
            if proto in ("tcp", "udp") or token.isdigit():
                port = _port_value(name)
                protocol = proto or None
                if port is None:
                    conditional = True   # 6000:6007/tcp, 80,443/tcp
            elif _looks_like_address(token):
                destination = token
            elif token.lower() != "anywhere":
                conditional = True   # app profiles (OpenSSH), bare ranges, interfaces
        summary.rules.append(FirewallRule(
            action=_normalize_action(rule.group("action")) or "accept",
            direction=_UFW_DIRECTION[rule.group("dir") or "IN"],
            destination=destination,
            protocol=protocol,
            port=port,
            conditional=conditional,
            raw=line,
        ))
    return summary


_FWD_KEY = re.compile(r"^\s*([a-z][a-z -]*):\s*(.*)$")
_FWD_RICH_ADDR = re.compile(r'destination\s+address="([^"]+)"')
_FWD_RICH_PORT = re.compile(r'port\s+port="(\d+)"\s+protocol="(\w+)"')
_FWD_TARGETS = {"default": None, "accept": "accept", "drop": "drop", "reject": "reject", "%%reject%%": "reject"}


def parse_firewalld_zone(text: str) -> RulesetSummary:
    """`firewall-cmd --list-all` (default zone) -> RulesetSummary.

    Zones govern inbound traffic; only rich rules naming a destination
    address take part in the outbound evaluation.
    """
    lines = (text or "").splitlines()
    if not lines or not lines[0].strip():
        raise UnparseableOutput("firewall-cmd --list-all: empty output")
    summary = RulesetSummary(mechanism="firewalld", zone=lines[0].split()[0])
    in_rich = False
    for line in lines[1:]:
        key = _FWD_KEY.match(line)
        if key:
            name, value = key.group(1).strip(), key.group(2).strip()
            in_rich = name == "rich rules"
            if name == "target":
                summary.inbound_policy = _FWD_TARGETS.get(value.lower())
            elif name == "ports":
                summary.allowed_ports = value.split()
            rule_text = value if in_rich else ""
        elif in_rich:
            rule_text = line.strip()
        else:
            continue
        verdict = _NFT_VERDICT.search(rule_text)
        if not rule_text.startswith("rule") or verdict is None:
            continue
        daddr = _FWD_RICH_ADDR.search(rule_text)
        rport = _FWD_RICH_PORT.search(rule_text)
        summary.rules.append(FirewallRule(
            action=verdict.group(1),
            direction="out" if daddr else "in",
            destination=daddr.group(1) if daddr else None,
            protocol=rport.group(2) if rport else None,
            port=int(rport.group(1)) if rport else None,
            conditional="source address" in rule_text,
            raw=rule_text,
        ))
    return summary


def address_in(address: str, selector: Optional[str]) -> bool:
    """True if `address` falls inside a rule's destination selector (IP or CIDR)."""
    if selector is None or selector.lower() in ("anywhere", "any"):
        return True
    try:
        return ipaddress.ip_address(address) in ipaddress.ip_network(selector, strict=False)
    except ValueError:
        return False
