"""
Layers, severities, issue kinds and the published cause codes.

Cause codes double as process exit status, so the numeric values below are
a public contract: never renumber, never reuse a retired value.
Each layer owns its own namespace (Policy's 42 is not Transport's 42).
"""
from __future__ import annotations

from enum import Enum, IntEnum
from typing import Tuple


class Layer(str, Enum):
    LINK = "link"
    NETWORK = "network"
    TRANSPORT = "transport"
    POLICY = "policy"


# Fixed execution order, mirrors protocol-stack dependency
LAYER_ORDER: Tuple[Layer, ...] = (Layer.LINK, Layer.NETWORK, Layer.TRANSPORT, Layer.POLICY)

LAYER_TITLES = {
    Layer.LINK: "Layer 2: Link",
    Layer.NETWORK: "Layer 3: Network",
    Layer.TRANSPORT: "Layer 4: Transport",
    Layer.POLICY: "Firewall Policy",
}


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class OutcomeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INFORMATIONAL_PASS = "informational_pass"


class IssueKind(str, Enum):
    # reserved, any layer
    PERMISSION_DENIED = "permission_denied"
    TOOLING_UNAVAILABLE = "tooling_unavailable"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    TIMEOUT = "timeout"
    UNPARSEABLE_OUTPUT = "unparseable_output"

    # link
    RFKILL_BLOCKED = "rfkill_blocked"
    NO_INTERFACE = "no_interface"
    LOOPBACK_ROUTING = "loopback_routing"
    INTERFACE_DOWN = "interface_down"
    NO_CARRIER = "no_carrier"
    WIFI_NOT_ASSOCIATED = "wifi_not_associated"
    NEIGHBOR_UNREACHABLE = "neighbor_unreachable"

    # network
    NO_IP_ADDRESS = "no_ip_address"
    NO_ROUTE = "no_route"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    DESTINATION_UNREACHABLE = "destination_unreachable"
    NO_IPV6 = "no_ipv6"
    NO_DEFAULT_GATEWAY = "no_default_gateway"

    # transport
    PORT_CLOSED = "port_closed"
    UDP_UNCONFIRMED = "udp_unconfirmed"

    # policy
    EXPLICIT_BLOCK_RULE = "explicit_block_rule"
    DEFAULT_POLICY_DROP = "default_policy_drop"
    NO_FIREWALL = "no_firewall"
    INBOUND_POLICY_DROP = "inbound_policy_drop"
    PORT_NOT_ALLOWED = "port_not_allowed"


class GeneralCode(IntEnum):
    OK = 0
    PRIVILEGE_REQUIRED = 1


class LinkCode(IntEnum):
    RFKILL_BLOCKED = 10
    INTERFACE_DOWN = 11
    NO_CARRIER = 12
    WIFI_NOT_ASSOCIATED = 13
    NEIGHBOR_UNREACHABLE = 14


class NetworkCode(IntEnum):
    NO_IP_ADDRESS = 20
    NO_ROUTE = 21
    GATEWAY_UNREACHABLE = 22
    DESTINATION_UNREACHABLE = 23


class TransportCode(IntEnum):
    PORT_CLOSED = 30
    CONNECTION_TIMEOUT = 31
    CAPABILITY_UNAVAILABLE = 32


class PolicyCode(IntEnum):
    EXPLICIT_BLOCK = 40
    DEFAULT_POLICY_DROP = 41
    NO_FIREWALL = 42


LAYER_CODES = {
    Layer.LINK: LinkCode,
    Layer.NETWORK: NetworkCode,
    Layer.TRANSPORT: TransportCode,
    Layer.POLICY: PolicyCode,
}

# Exit statuses the CLI uses outside the diagnostic namespaces
EXIT_INVALID_ARGS = 2
EXIT_CANCELLED = 130


def describe_code(layer: Layer, code: int) -> str:
    """Short human label for a (layer, code) pair, '' when unknown."""
    if code == GeneralCode.OK:
        return "pass"
    if code == GeneralCode.PRIVILEGE_REQUIRED:
        return "privilege precondition not met"
    try:
        member = LAYER_CODES[layer](code)
    except ValueError:
        return ""
    return member.name.lower().replace("_", " ")
