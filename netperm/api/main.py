# netperm/api/main.py
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from netperm.config import get_settings
from netperm.core import report as report_mod
from netperm.core.orchestrator import Orchestrator
from netperm.core.preflight import InvalidTargetError, PrivilegeError

app = FastAPI(title="netperm API", version="0.1.0")


def get_orchestrator() -> Orchestrator:
    # fresh per request: no state is shared between diagnoses
    return Orchestrator()


@app.get("/health", tags=["system"])
def health():
    return {"ok": True}


# ----- Schemas -----
class DiagnoseRequest(BaseModel):
    target: Optional[str] = None
    port: Optional[int] = Field(default=None, description="Destination port; out-of-range values answer 400")
    protocol: Optional[Literal["tcp", "udp"]] = None
    verbose: bool = False
    save: bool = False  # write artifacts under NETPERM_OUT_DIR
    out_dir: Optional[str] = None  # when set, artifacts go to <out_dir>/job-<ts>/


class DiagnoseResponse(BaseModel):
    ok: bool
    permitted: bool
    exit_code: int
    report: dict
    evidence_path: Optional[str] = None
    report_path: Optional[str] = None


# ----- Endpoint -----
@app.post("/diagnose", response_model=DiagnoseResponse, tags=["diagnose"])
def diagnose(req: DiagnoseRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        result = orchestrator.diagnose(req.target, req.port, req.protocol)
    except PrivilegeError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except InvalidTargetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    evidence_path = report_path = None
    if req.out_dir or req.save:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        job_dir = Path(req.out_dir or get_settings().out_dir) / f"job-{ts}"
        job_dir.mkdir(parents=True, exist_ok=True)

        evidence_path = job_dir / "evidence.json"
        with evidence_path.open("w", encoding="utf-8") as f:
            json.dump(report_mod.to_dict(result, verbose=True), f, indent=2)

        report_path = job_dir / "diagnosis_report.md"
        report_path.write_text(report_mod.build_markdown_report(result), encoding="utf-8")

    return DiagnoseResponse(
        ok=True,
        permitted=result.permitted,
        exit_code=result.exit_code,
        report=report_mod.to_dict(result, verbose=req.verbose),
        evidence_path=str(evidence_path) if evidence_path else None,
        report_path=str(report_path) if report_path else None,
    )
