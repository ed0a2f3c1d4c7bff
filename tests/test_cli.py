import json
import signal

import pytest
from conftest import FakeHost

from netperm import cli
from netperm.config import Settings
from netperm.core.orchestrator import Orchestrator
from netperm.core.parse import RulesetSummary


@pytest.fixture
def use_host(monkeypatch, settings):
    def install(host=None, privileged=True):
        host = host or FakeHost()

        def factory(**kwargs):
            return Orchestrator(host=host, settings=settings, privilege_check=lambda: privileged, **kwargs)

        monkeypatch.setattr(cli, "Orchestrator", factory)
        return host
    return install


def test_quiet_summary_and_zero_exit(use_host, capsys):
    use_host()
    assert cli.main(["8.8.8.8", "443", "-q"]) == 0
    assert capsys.readouterr().out.strip() == "Checks passed: 4/4"


def test_text_report_by_default(use_host, capsys):
    use_host()
    assert cli.main(["8.8.8.8", "443"]) == 0
    captured = capsys.readouterr()
    assert "All network layers permit communication to 8.8.8.8:443" in captured.out
    assert "[*] Layer 2: Link ..." in captured.err


def test_json_output_and_cause_code_exit(use_host, capsys):
    use_host(FakeHost(mechanism="iptables", ruleset=RulesetSummary(mechanism="iptables", outbound_policy="drop")))
    assert cli.main(["8.8.8.8", "443", "-j"]) == 41
    data = json.loads(capsys.readouterr().out)
    assert data["exit_code"] == 41
    assert data["permitted"] is False
    assert "facts" not in data["layers"][0]


def test_out_writes_artifacts(use_host, tmp_path, capsys):
    use_host()
    out = tmp_path / "reports"
    assert cli.main(["8.8.8.8", "443", "--proto", "udp", "-q", "--out", str(out)]) == 0

    evidence = json.loads((out / "evidence.json").read_text(encoding="utf-8"))
    assert evidence["protocol"] == "udp"
    assert "facts" in evidence["layers"][0]
    assert (out / "diagnosis_report.md").read_text(encoding="utf-8").startswith("# Network Permission Diagnosis")
    assert "Artifact written:" in capsys.readouterr().out


def test_unprivileged_exits_1(use_host, capsys):
    host = use_host(privileged=False)
    assert cli.main(["8.8.8.8", "443"]) == 1
    assert "root" in capsys.readouterr().err
    assert host.calls == []


def test_invalid_target_exits_2(use_host, capsys):
    use_host()
    assert cli.main(["8.8.8.8", "0"]) == 2
    assert "invalid port" in capsys.readouterr().err


def test_non_numeric_port_is_an_argument_error(use_host):
    use_host()
    with pytest.raises(SystemExit) as exc:
        cli.main(["8.8.8.8", "http"])
    assert exc.value.code == 2


class InterruptingHost(FakeHost):
    """Delivers Ctrl-C while the link layer is running."""

    def route_for(self, destination):
        if not any(call[0] == "route_for" for call in self.calls):
            signal.raise_signal(signal.SIGINT)
        return super().route_for(destination)


def test_sigint_cancels_at_next_layer_boundary(use_host, capsys):
    host = use_host(InterruptingHost())
    assert cli.main(["8.8.8.8", "443", "-q"]) == 130
    assert capsys.readouterr().out.strip() == "Checks passed: 1/4"
    # link finished, nothing after it ran
    assert [c for c in host.calls if c[0] == "route_for"] == [("route_for", "8.8.8.8")]


def test_bare_out_uses_configured_dir(use_host, tmp_path, monkeypatch):
    use_host()
    configured = Settings(_env_file=None, out_dir=str(tmp_path / "configured"))
    monkeypatch.setattr(cli, "get_settings", lambda: configured)
    assert cli.main(["8.8.8.8", "443", "-q", "--out"]) == 0
    assert (tmp_path / "configured" / "evidence.json").exists()
    assert (tmp_path / "configured" / "diagnosis_report.md").exists()
