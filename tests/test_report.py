import json
import threading

from conftest import FakeHost

from netperm.core import report
from netperm.core.parse import RulesetSummary


def test_json_contract_for_permitted_run(make_orchestrator):
    result = make_orchestrator(FakeHost()).diagnose("8.8.8.8", 443)
    data = report.to_dict(result)

    for key in ("permitted", "status", "layers_passed", "layers_total", "exit_code",
                "failed_layers", "target", "port", "protocol", "timestamp"):
        assert key in data
    assert data["permitted"] is True
    assert data["status"] == "complete"
    assert data["failed_layers"] == []
    assert [layer["layer"] for layer in data["layers"]] == ["link", "network", "transport", "policy"]

    link = data["layers"][0]
    assert link["outcome"] == "pass"
    assert "cause_code" not in link and "remediation" not in link
    assert "facts" not in link

    policy = data["layers"][3]
    assert policy["outcome"] == "informational_pass"
    assert policy["cause_code"] == 42
    assert policy["remediation"]
    json.dumps(data)


def test_json_contract_for_failing_layer(make_orchestrator):
    host = FakeHost(mechanism="iptables", ruleset=RulesetSummary(mechanism="iptables", outbound_policy="drop"))
    data = report.to_dict(make_orchestrator(host).diagnose("8.8.8.8", 443), verbose=True)

    policy = data["layers"][3]
    assert policy["outcome"] == "fail"
    assert policy["cause_code"] == 41
    assert policy["issue"] == "default_policy_drop"
    assert policy["remediation"]
    assert data["exit_code"] == 41
    assert data["failed_layers"] == ["policy"]
    # verbose adds the raw evidence
    assert policy["facts"]["firewall"]["value"] == "iptables"
    assert policy["issues"][0]["severity"] == "error"
    json.dumps(data)


def test_text_report(make_orchestrator):
    host = FakeHost(mechanism="iptables", ruleset=RulesetSummary(mechanism="iptables", outbound_policy="drop"))
    result = make_orchestrator(host).diagnose("8.8.8.8", 443)

    text = report.build_text_report(result)
    assert "Layer 2: Link" in text
    assert "FAIL [41] default_policy_drop" in text
    assert "Recommended actions:" in text
    assert "Checks passed: 3/4" in text
    assert "Failed layers: policy" in text
    assert "Facts:" not in text

    assert "routed_interface: eth0" in report.build_text_report(result, verbose=True)


def test_text_report_for_cancelled_run(make_orchestrator):
    cancel = threading.Event()
    cancel.set()
    text = report.build_text_report(make_orchestrator(FakeHost()).diagnose("8.8.8.8", 443, cancel=cancel))
    assert "Checks passed: 0/4" in text
    assert "not checked: link, network, transport, policy" in text


def test_markdown_report(make_orchestrator):
    result = make_orchestrator(FakeHost()).diagnose("8.8.8.8", 443)
    md = report.build_markdown_report(result)
    assert md.startswith("# Network Permission Diagnosis")
    assert "**Status:** Permitted" in md
    assert "| Firewall Policy | PASS (info) | 42 | no_firewall |" in md
    assert "| routed_interface | `eth0` | observed |" in md
