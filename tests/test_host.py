import subprocess

import pytest

from netperm.config import Settings
from netperm.core import host as host_mod
from netperm.core.host import AccessDenied, CommandFailed, CommandTimeout, EchoResult, LinuxHost, ToolMissing


class FakeRun:
    """Scripted subprocess.run keyed by the command line."""

    def __init__(self, outputs):
        self.outputs = outputs
        self.seen = []

    def __call__(self, args, **kwargs):
        self.seen.append(args)
        answer = self.outputs.get(" ".join(args), (1, "", ""))
        if isinstance(answer, Exception):
            raise answer
        code, out, err = answer
        return subprocess.CompletedProcess(args, code, stdout=out, stderr=err)


@pytest.fixture
def linux(monkeypatch):
    def _make(outputs, installed=("ip", "rfkill", "iw", "ss", "ufw", "firewall-cmd", "nft", "iptables", "ip6tables")):
        monkeypatch.setattr(host_mod.shutil, "which", lambda tool: f"/usr/sbin/{tool}" if tool in installed else None)
        fake = FakeRun(outputs)
        monkeypatch.setattr(host_mod.subprocess, "run", fake)
        return LinuxHost(Settings(_env_file=None))
    return _make


def test_missing_tool(linux):
    with pytest.raises(ToolMissing):
        linux({}, installed=()).rfkill_radios()


def test_permission_marker_maps_to_access_denied(linux):
    h = linux({"rfkill list": (1, "", "Can't open RFKILL control device: Permission denied")})
    with pytest.raises(AccessDenied):
        h.rfkill_radios()


def test_other_failures_are_command_failed(linux):
    h = linux({"iw dev wlan0 link": (237, "", "command failed: No such device (-19)")})
    with pytest.raises(CommandFailed) as exc:
        h.wifi_associated("wlan0")
    assert exc.value.returncode == 237


def test_timeout(linux):
    h = linux({"rfkill list": subprocess.TimeoutExpired(["rfkill", "list"], 2.0)})
    with pytest.raises(CommandTimeout):
        h.rfkill_radios()


def test_route_lookup_failure_means_no_route(linux):
    h = linux({"ip -j route get 10.9.9.9": (2, "", "RTNETLINK answers: Network is unreachable")})
    assert h.route_for("10.9.9.9") is None


def test_route_lookup(linux):
    h = linux({"ip -j route get 8.8.8.8": (0, '[{"dst":"8.8.8.8","gateway":"10.0.0.1","dev":"eth0"}]', "")})
    route = h.route_for("8.8.8.8")
    assert (route.dev, route.gateway) == ("eth0", "10.0.0.1")


def test_firewall_detection_prefers_front_ends(linux):
    outputs = {
        "ufw status": (0, "Status: inactive\n", ""),
        "firewall-cmd --state": (252, "not running\n", ""),
        "nft list tables": (0, "table inet filter\n", ""),
    }
    assert linux(outputs).firewall_mechanism() == "nftables"

    outputs["ufw status"] = (0, "Status: active\n", "")
    assert linux(outputs).firewall_mechanism() == "ufw"


def test_plain_accept_iptables_is_no_firewall(linux):
    outputs = {"iptables -S": (0, "-P INPUT ACCEPT\n-P FORWARD ACCEPT\n-P OUTPUT ACCEPT\n", "")}
    assert linux(outputs, installed=("iptables",)).firewall_mechanism() is None

    outputs = {"iptables -S": (0, "-P INPUT DROP\n-P FORWARD DROP\n-P OUTPUT ACCEPT\n", "")}
    assert linux(outputs, installed=("iptables",)).firewall_mechanism() == "iptables"


def test_ipv6_ruleset_reads_ip6tables(linux):
    outputs = {"ip6tables -S": (0, "-P OUTPUT DROP\n", "")}
    h = linux(outputs)
    assert h.firewall_ruleset("iptables", ipv6=True).outbound_policy == "drop"


def test_unknown_mechanism(linux):
    with pytest.raises(ValueError):
        linux({}).firewall_ruleset("pf")


def test_echo_result_loss():
    assert EchoResult("8.8.8.8", sent=4, received=3).loss_pct == 25.0
    assert EchoResult("8.8.8.8", sent=0, received=0).loss_pct == 100.0
    assert not EchoResult("8.8.8.8", sent=1, received=0).reachable
