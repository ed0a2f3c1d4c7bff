"""
Remediation lookup.
Keep entries short and actionable; operators paste these into a shell.
Ordered most-likely fix first.
"""
from __future__ import annotations

from typing import Dict, List, Tuple

from netperm.core.codes import GeneralCode, Layer, LinkCode, NetworkCode, PolicyCode, TransportCode

PRIVILEGE_STEPS = (
    "Re-run with root privileges: sudo netperm <destination> <port>",
    "Alternatively grant the binary CAP_NET_ADMIN and CAP_NET_RAW",
)

REMEDIATIONS: Dict[Tuple[Layer, int], Tuple[str, ...]] = {
    # Link
    (Layer.LINK, LinkCode.RFKILL_BLOCKED): (
        "Unblock wireless: sudo rfkill unblock all",
        "Check for a hardware radio switch or Fn key on the laptop",
        "Check the BIOS/UEFI wireless settings",
    ),
    (Layer.LINK, LinkCode.INTERFACE_DOWN): (
        "Bring the interface up: sudo ip link set <interface> up",
        "Check NetworkManager: nmcli device status",
        "Check systemd-networkd: systemctl status systemd-networkd",
        "Verify a route exists for the destination: ip route get <destination>",
    ),
    (Layer.LINK, LinkCode.NO_CARRIER): (
        "Check the cable is plugged in at both ends (wired)",
        "Try a different cable or switch port",
        "Check WiFi is enabled (wireless)",
        "Move closer to the access point (wireless)",
    ),
    (Layer.LINK, LinkCode.WIFI_NOT_ASSOCIATED): (
        "Connect to WiFi: nmcli device wifi connect <SSID> password <PASSWORD>",
        "List available networks: nmcli device wifi list",
        "Restart NetworkManager: sudo systemctl restart NetworkManager",
    ),
    (Layer.LINK, LinkCode.NEIGHBOR_UNREACHABLE): (
        "Check the gateway/next hop is online",
        "Clear the neighbor cache: sudo ip neigh flush all",
        "Verify you are on the correct network segment / VLAN",
        "Check for MAC filtering on the router or switch",
    ),
    # Network
    (Layer.NETWORK, NetworkCode.NO_IP_ADDRESS): (
        "Request an address via DHCP: sudo dhclient <interface>",
        "Or set a static address: sudo ip addr add <IP>/<PREFIX> dev <interface>",
        "Check the DHCP server is running and reachable",
        "Restart networking: sudo systemctl restart systemd-networkd",
    ),
    (Layer.NETWORK, NetworkCode.NO_ROUTE): (
        "Add a default route: sudo ip route add default via <GATEWAY>",
        "Inspect the routing table: ip route show",
        "Restart the networking service",
    ),
    (Layer.NETWORK, NetworkCode.GATEWAY_UNREACHABLE): (
        "Check the gateway is online",
        "Verify the gateway address is correct: ip route show",
        "The gateway may block ICMP; compare with the transport layer result",
    ),
    (Layer.NETWORK, NetworkCode.DESTINATION_UNREACHABLE): (
        "Check the destination is online",
        "The destination may block ICMP; compare with the transport layer result",
        "Look for routing problems along the path: traceroute <destination>",
    ),
    # Transport
    (Layer.TRANSPORT, TransportCode.PORT_CLOSED): (
        "Verify the service is running and listening on the destination",
        "Check the port number is correct",
        "Check the destination host firewall",
        "Verify NAT / port forwarding along the path",
    ),
    (Layer.TRANSPORT, TransportCode.CONNECTION_TIMEOUT): (
        "The destination may be offline",
        "A firewall may be silently dropping packets",
        "Check intermediate firewalls / NAT devices",
        "Increase the timeout and retry: NETPERM_CONNECT_TIMEOUT=5",
    ),
    (Layer.TRANSPORT, TransportCode.CAPABILITY_UNAVAILABLE): (
        "Run as root so raw sockets can be opened",
        "Check the kernel supports the destination's address family",
        "Reinstall the probing dependency: pip install --upgrade scapy",
    ),
    # Policy
    (Layer.POLICY, PolicyCode.EXPLICIT_BLOCK): (
        "Review firewall rules: sudo iptables -S / sudo nft list ruleset / sudo ufw status verbose",
        "Allow the traffic explicitly, e.g. sudo ufw allow out to <destination> port <port>",
        "Temporarily disable the firewall to confirm: sudo ufw disable",
    ),
    (Layer.POLICY, PolicyCode.DEFAULT_POLICY_DROP): (
        "Add an explicit allow rule for the destination",
        "Review and adjust the outbound default policy",
        "Use a more permissive policy while testing",
    ),
    (Layer.POLICY, PolicyCode.NO_FIREWALL): (
        "No host firewall is active; consider enabling one (ufw, firewalld or nftables)",
    ),
}


def recommend(layer: Layer, cause_code: int) -> List[str]:
    """Ordered remediation steps for a (layer, cause code) pair.

    Unknown pairs give an empty list; this sits on the reporting path and
    must never raise.
    """
    if cause_code == GeneralCode.PRIVILEGE_REQUIRED:
        return list(PRIVILEGE_STEPS)
    return list(REMEDIATIONS.get((layer, cause_code), ()))
