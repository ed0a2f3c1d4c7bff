import threading

import pytest
from conftest import FakeHost

from netperm.core.codes import LAYER_ORDER, IssueKind, Layer, OutcomeStatus
from netperm.core.evidence import FactState
from netperm.core.host import ConnectResult
from netperm.core.orchestrator import (
    InvalidStateTransition,
    RunLifecycle,
    RunState,
    RunStatus,
)
from netperm.core.parse import Addresses, LinkState, Route, RulesetSummary
from netperm.core.preflight import InvalidTargetError, PrivilegeError
from netperm.core.recommendations import recommend


def test_healthy_host_is_permitted(make_orchestrator):
    result = make_orchestrator(FakeHost()).diagnose("8.8.8.8", 443, "tcp")
    assert result.status is RunStatus.COMPLETE
    assert [o.layer for o in result.outcomes] == list(LAYER_ORDER)
    assert result.permitted
    assert result.exit_code == 0
    assert result.layers_passed == result.layers_total == 4
    assert all(r.sealed for r in result.records)


def test_missing_address_fails_network(make_orchestrator):
    host = FakeHost(addrs=Addresses())
    result = make_orchestrator(host).diagnose("8.8.8.8", 443)
    network = result.outcome(Layer.NETWORK)
    assert network.status is OutcomeStatus.FAIL
    assert network.cause_code == 20
    assert not result.permitted
    assert result.exit_code == 20
    assert "dhclient" in recommend(Layer.NETWORK, network.cause_code)[0]


def test_no_firewall_still_permitted(make_orchestrator):
    result = make_orchestrator(FakeHost(mechanism=None)).diagnose("8.8.8.8", 443)
    policy = result.outcome(Layer.POLICY)
    assert policy.status is OutcomeStatus.INFORMATIONAL_PASS
    assert policy.cause_code == 42
    assert result.permitted
    assert result.exit_code == 0


def test_carrier_loss_reports_no_carrier_not_interface_down(make_orchestrator):
    host = FakeHost(link=LinkState("eth0", ("BROADCAST", "MULTICAST", "UP"), "DOWN"))
    result = make_orchestrator(host).diagnose("8.8.8.8", 443)
    link = result.outcome(Layer.LINK)
    assert link.cause_code == 12
    assert link.issue is IssueKind.NO_CARRIER


def test_loopback_route_runs_every_layer(make_orchestrator):
    host = FakeHost(route=Route(dev="lo", route_type="local"))
    result = make_orchestrator(host).diagnose("127.0.0.1", 8080)

    link = result.outcome(Layer.LINK)
    assert link.cause_code == 11
    assert "loopback" in link.detail and "not applicable" in link.detail
    assert len(result.outcomes) == 4

    network = result.record(Layer.NETWORK)
    assert network.fact("ipv4_addresses").state is FactState.NOT_APPLICABLE
    transport = result.record(Layer.TRANSPORT)
    assert transport.fact("bound_interface").state is FactState.NOT_APPLICABLE
    assert ("tcp_connect", "127.0.0.1", 8080, None) in host.calls


def test_every_probe_runs_after_a_failure(make_orchestrator):
    host = FakeHost(
        route=None,
        connect=ConnectResult("refused", error="connection refused (RST)"),
        mechanism="iptables",
        ruleset=RulesetSummary(mechanism="iptables", outbound_policy="drop"),
    )
    result = make_orchestrator(host).diagnose("8.8.8.8", 443)
    assert [o.cause_code for o in result.outcomes] == [11, 21, 30, 41]
    assert result.failed_layers == list(LAYER_ORDER)
    assert result.exit_code == 11
    assert result.layers_passed == 0


def test_exit_code_is_first_failing_layer(make_orchestrator):
    host = FakeHost(mechanism="iptables", ruleset=RulesetSummary(mechanism="iptables", outbound_policy="drop"))
    result = make_orchestrator(host).diagnose("8.8.8.8", 443)
    assert result.failed_layers == [Layer.POLICY]
    assert result.exit_code == 41


def test_privilege_checked_before_any_probe(make_orchestrator):
    host = FakeHost()
    with pytest.raises(PrivilegeError):
        make_orchestrator(host, privilege_check=lambda: False).diagnose("8.8.8.8", 443)
    assert host.calls == []


@pytest.mark.parametrize("target,port,protocol", [
    ("8.8.8.8", 0, "tcp"),
    ("8.8.8.8", 70000, "tcp"),
    ("8.8.8.8", 443, "icmp"),
    ("not a host!", 443, "tcp"),
])
def test_invalid_target_rejected(make_orchestrator, target, port, protocol):
    host = FakeHost()
    with pytest.raises(InvalidTargetError):
        make_orchestrator(host).diagnose(target, port, protocol)
    assert host.calls == []


def test_settings_supply_defaults(make_orchestrator, settings):
    result = make_orchestrator(FakeHost()).diagnose()
    assert (result.target, result.port, result.protocol) == (settings.default_target, settings.default_port, "tcp")


def test_cancel_before_start_is_incomplete(make_orchestrator):
    cancel = threading.Event()
    cancel.set()
    result = make_orchestrator(FakeHost()).diagnose("8.8.8.8", 443, cancel=cancel)
    assert result.status is RunStatus.INCOMPLETE
    assert result.outcomes == []
    assert not result.permitted


def test_cancel_between_layers_keeps_resolved_outcomes(make_orchestrator):
    cancel = threading.Event()
    seen = []

    def on_transition(old, new):
        seen.append(new)
        if new is RunState.NETWORK_RUNNING:
            cancel.set()

    orchestrator = make_orchestrator(FakeHost(), on_transition=on_transition)
    result = orchestrator.diagnose("8.8.8.8", 443, cancel=cancel)

    assert result.status is RunStatus.INCOMPLETE
    assert [o.layer for o in result.outcomes] == [Layer.LINK, Layer.NETWORK]
    assert seen == [RunState.LINK_RUNNING, RunState.NETWORK_RUNNING, RunState.CANCELLED]
    assert not result.permitted


def test_transition_callback_sees_full_lifecycle(make_orchestrator):
    seen = []
    make_orchestrator(FakeHost(), on_transition=lambda old, new: seen.append((old, new))).diagnose("8.8.8.8", 443)
    assert [new for _, new in seen] == [
        RunState.LINK_RUNNING,
        RunState.NETWORK_RUNNING,
        RunState.TRANSPORT_RUNNING,
        RunState.POLICY_RUNNING,
        RunState.COMPLETE,
    ]


def test_lifecycle_rejects_invalid_transitions():
    lifecycle = RunLifecycle()
    with pytest.raises(InvalidStateTransition):
        lifecycle.advance(RunState.TRANSPORT_RUNNING)
    lifecycle.advance(RunState.LINK_RUNNING)
    lifecycle.advance(RunState.CANCELLED)
    with pytest.raises(InvalidStateTransition) as exc:
        lifecycle.advance(RunState.NETWORK_RUNNING)
    assert exc.value.from_state is RunState.CANCELLED


def test_runs_share_no_state(make_orchestrator):
    orchestrator = make_orchestrator(FakeHost())
    first = orchestrator.diagnose("8.8.8.8", 443)
    second = orchestrator.diagnose("8.8.8.8", 443)
    assert first.records[0] is not second.records[0]
    assert first.records[0].issues == second.records[0].issues == []
