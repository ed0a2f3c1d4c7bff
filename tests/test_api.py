import pytest
from conftest import FakeHost
from fastapi.testclient import TestClient

from netperm.api import main as api_main
from netperm.api.main import app, get_orchestrator
from netperm.config import Settings
from netperm.core.orchestrator import Orchestrator
from netperm.core.parse import RulesetSummary


@pytest.fixture
def client_for(settings):
    def _client(host=None, privileged=True):
        host = host or FakeHost()
        app.dependency_overrides[get_orchestrator] = lambda: Orchestrator(
            host=host, settings=settings, privilege_check=lambda: privileged
        )
        return TestClient(app)
    yield _client
    app.dependency_overrides.clear()


def test_health(client_for):
    r = client_for().get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_diagnose_permitted(client_for):
    r = client_for().post("/diagnose", json={"target": "8.8.8.8", "port": 443})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["permitted"] is True
    assert body["exit_code"] == 0
    assert len(body["report"]["layers"]) == 4
    assert body["evidence_path"] is None


def test_diagnose_blocked_verbose(client_for):
    host = FakeHost(mechanism="nftables", ruleset=RulesetSummary(mechanism="nftables", outbound_policy="drop"))
    r = client_for(host).post("/diagnose", json={"target": "8.8.8.8", "port": 443, "verbose": True})
    body = r.json()
    assert body["permitted"] is False
    assert body["exit_code"] == 41
    assert "facts" in body["report"]["layers"][3]


def test_diagnose_writes_artifacts(client_for, tmp_path):
    r = client_for().post("/diagnose", json={"target": "8.8.8.8", "port": 443, "out_dir": str(tmp_path)})
    body = r.json()
    assert body["evidence_path"].endswith("evidence.json")
    assert body["report_path"].endswith("diagnosis_report.md")
    assert len(list(tmp_path.glob("job-*/evidence.json"))) == 1


def test_unprivileged_is_403(client_for):
    r = client_for(privileged=False).post("/diagnose", json={"target": "8.8.8.8", "port": 443})
    assert r.status_code == 403


def test_invalid_target_is_400(client_for):
    r = client_for().post("/diagnose", json={"target": "8.8.8.8", "port": 70000})
    assert r.status_code == 400
    assert "invalid port" in r.json()["detail"]


def test_unknown_protocol_is_422(client_for):
    r = client_for().post("/diagnose", json={"target": "8.8.8.8", "port": 443, "protocol": "icmp"})
    assert r.status_code == 422


def test_save_uses_configured_dir(client_for, tmp_path, monkeypatch):
    monkeypatch.setattr(api_main, "get_settings", lambda: Settings(_env_file=None, out_dir=str(tmp_path)))
    body = client_for().post("/diagnose", json={"target": "8.8.8.8", "port": 443, "save": True}).json()
    assert body["evidence_path"].startswith(str(tmp_path))
    assert len(list(tmp_path.glob("job-*/diagnosis_report.md"))) == 1
