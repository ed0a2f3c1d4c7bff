"""
Report builders.
to_dict() is the machine contract (CLI -j, API, evidence.json); the text and
markdown builders are for humans and may change wording freely.
"""
from __future__ import annotations

from typing import Any, Dict, List

from netperm.core.codes import LAYER_ORDER, LAYER_TITLES, OutcomeStatus
from netperm.core.evidence import FactState, LayerRecord
from netperm.core.orchestrator import RunResult, RunStatus
from netperm.core.recommendations import recommend
from netperm.core.verdicts import LayerOutcome

_MARKS = {
    OutcomeStatus.PASS: "PASS",
    OutcomeStatus.INFORMATIONAL_PASS: "PASS (info)",
    OutcomeStatus.FAIL: "FAIL",
}


def _record_dict(record: LayerRecord) -> Dict[str, Any]:
    return {
        "facts": {
            name: {
                "value": fact.value,
                "state": fact.state.value,
                "note": fact.note,
                "collected_at": fact.collected_at.isoformat(),
            }
            for name, fact in record.facts.items()
        },
        "issues": [
            {
                "kind": issue.kind.value,
                "severity": issue.severity.value,
                "detail": issue.detail,
                "sequence": issue.sequence,
            }
            for issue in record.issues
        ],
    }


def _layer_dict(outcome: LayerOutcome, record: LayerRecord, verbose: bool) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "layer": outcome.layer.value,
        "outcome": outcome.status.value,
        "issue": outcome.issue.value if outcome.issue else None,
        "detail": outcome.detail,
    }
    if outcome.status is not OutcomeStatus.PASS:
        entry["cause_code"] = outcome.cause_code
        entry["remediation"] = recommend(outcome.layer, outcome.cause_code)
    if verbose:
        entry.update(_record_dict(record))
    return entry


def to_dict(result: RunResult, verbose: bool = False) -> Dict[str, Any]:
    """JSON-ready view of a run."""
    return {
        "target": result.target,
        "address": result.address,
        "port": result.port,
        "protocol": result.protocol,
        "timestamp": result.finished_at.isoformat(),
        "status": result.status.value,
        "permitted": result.permitted,
        "layers_passed": result.layers_passed,
        "layers_total": result.layers_total,
        "exit_code": result.exit_code,
        "failed_layers": [layer.value for layer in result.failed_layers],
        "layers": [
            _layer_dict(outcome, record, verbose)
            for outcome, record in zip(result.outcomes, result.records)
        ],
    }


def _fact_text(record: LayerRecord) -> List[str]:
    lines = []
    for name, fact in record.facts.items():
        if fact.state is FactState.OBSERVED:
            shown = fact.value
        else:
            shown = f"<{fact.state.value}>"
        suffix = f"  ({fact.note})" if fact.note else ""
        lines.append(f"    {name}: {shown}{suffix}")
    return lines


def build_text_report(result: RunResult, verbose: bool = False) -> str:
    lines: List[str] = []
    lines.append("== netperm :: network permission analysis ==")
    lines.append(f"Target: {result.target}:{result.port}/{result.protocol} ({result.address})")
    lines.append(f"Time:   {result.finished_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")

    for outcome, record in zip(result.outcomes, result.records):
        lines.append("")
        lines.append(f"-- {LAYER_TITLES[outcome.layer]} --")
        status = _MARKS[outcome.status]
        if outcome.status is OutcomeStatus.PASS:
            lines.append(f"  {status}")
        else:
            lines.append(f"  {status} [{outcome.cause_code}] {outcome.issue.value if outcome.issue else ''}")
            if outcome.detail:
                lines.append(f"  {outcome.detail}")
        for warning in record.warnings():
            if warning.kind is outcome.issue:
                continue
            lines.append(f"  warning: {warning.detail or warning.kind.value}")
        if outcome.status is OutcomeStatus.FAIL:
            steps = recommend(outcome.layer, outcome.cause_code)
            if steps:
                lines.append("  Recommended actions:")
                lines.extend(f"    {i}. {step}" for i, step in enumerate(steps, 1))
        if verbose:
            lines.append("  Facts:")
            lines.extend(_fact_text(record))

    lines.append("")
    lines.append("== Summary ==")
    lines.append(f"Checks passed: {result.layers_passed}/{result.layers_total}")
    if result.status is RunStatus.INCOMPLETE:
        skipped = [layer.value for layer in LAYER_ORDER[len(result.outcomes):]]
        lines.append(f"Run cancelled; not checked: {', '.join(skipped)}")
    elif result.permitted:
        lines.append(f"All network layers permit communication to {result.target}:{result.port}")
    else:
        lines.append(f"Failed layers: {', '.join(layer.value for layer in result.failed_layers)}")
        lines.append(f"Exit code: {result.exit_code}")
    return "\n".join(lines) + "\n"


def build_markdown_report(result: RunResult) -> str:
    """Markdown report written next to evidence.json."""
    verdict = "Permitted" if result.permitted else ("Incomplete" if result.status is RunStatus.INCOMPLETE else "Blocked")
    md = []
    md.append("# Network Permission Diagnosis")
    md.append("")
    md.append(f"- **Target:** `{result.target}` ({result.address})")
    md.append(f"- **Port/Protocol:** {result.port}/{result.protocol}")
    md.append(f"- **Started:** {result.started_at.isoformat()}")
    md.append(f"- **Finished:** {result.finished_at.isoformat()}")
    md.append("")
    md.append("## Verdict")
    md.append(f"- **Status:** {verdict}")
    md.append(f"- **Checks passed:** {result.layers_passed}/{result.layers_total}")
    md.append(f"- **Exit code:** `{result.exit_code}`")
    md.append("")
    md.append("## Layers")
    md.append("")
    md.append("| Layer | Outcome | Code | Issue |")
    md.append("|---|---|---|---|")
    for outcome in result.outcomes:
        code = "" if outcome.status is OutcomeStatus.PASS else str(outcome.cause_code)
        issue = outcome.issue.value if outcome.issue else ""
        md.append(f"| {LAYER_TITLES[outcome.layer]} | {_MARKS[outcome.status]} | {code} | {issue} |")

    for outcome, record in zip(result.outcomes, result.records):
        md.append("")
        md.append(f"## {LAYER_TITLES[outcome.layer]}")
        if outcome.detail:
            md.append("")
            md.append(f"> {outcome.detail}")
        if record.issues:
            md.append("")
            md.append("**Issues**")
            for issue in record.issues:
                md.append(f"- `{issue.severity.value}` {issue.kind.value}: {issue.detail or ''}")
        if outcome.status is not OutcomeStatus.PASS:
            steps = recommend(outcome.layer, outcome.cause_code)
            if steps:
                md.append("")
                md.append("**Recommended actions**")
                md.extend(f"{i}. {step}" for i, step in enumerate(steps, 1))
        md.append("")
        md.append("**Evidence**")
        md.append("")
        md.append("| Fact | Value | State |")
        md.append("|---|---|---|")
        for name, fact in record.facts.items():
            value = "" if fact.value is None else "`" + str(fact.value).replace("|", "\\|") + "`"
            state = fact.state.value if not fact.note else f"{fact.state.value} ({fact.note})"
            md.append(f"| {name} | {value} | {state} |")

    md.append("")
    md.append("---")
    md.append("_Generated by netperm. Evidence is a point-in-time snapshot of the host's network stack._")
    return "\n".join(md) + "\n"
