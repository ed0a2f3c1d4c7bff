"""
Evidence store: facts and issues gathered for one layer in one run.

A LayerRecord is created by a probe, filled top-to-bottom while the probe's
checks execute, then sealed. After sealing it is read-only; the resolver and
the reporter only ever read it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr

from netperm.core.codes import IssueKind, Layer, Severity

FactValue = Union[bool, int, float, str, None]


class FactState(str, Enum):
    OBSERVED = "observed"
    ABSENT = "absent"                  # checked and empty
    NOT_APPLICABLE = "not_applicable"  # prerequisite missing, not attempted
    UNPARSEABLE = "unparseable"        # collaborator output could not be read


class DuplicateFactError(ValueError):
    """A fact name was written twice in the same layer record."""


class RecordSealedError(RuntimeError):
    """Write attempted on a sealed layer record."""


class Fact(BaseModel):
    name: str
    value: FactValue = None
    state: FactState = FactState.OBSERVED
    note: Optional[str] = None
    collected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Issue(BaseModel):
    kind: IssueKind
    severity: Severity
    detail: Optional[str] = None
    sequence: int = Field(..., ge=0, description="Recording order within the layer")


class LayerRecord(BaseModel):
    layer: Layer
    facts: Dict[str, Fact] = Field(default_factory=dict)
    issues: List[Issue] = Field(default_factory=list)

    _sealed: bool = PrivateAttr(default=False)

    # ----- writes -----
    def _check_writable(self) -> None:
        if self._sealed:
            raise RecordSealedError(f"{self.layer.value} record is sealed")

    def record_fact(
        self,
        name: str,
        value: FactValue,
        state: FactState = FactState.OBSERVED,
        note: Optional[str] = None,
    ) -> Fact:
        self._check_writable()
        if name in self.facts:
            raise DuplicateFactError(f"fact {name!r} already recorded for {self.layer.value}")
        fact = Fact(name=name, value=value, state=state, note=note)
        self.facts[name] = fact
        return fact

    def mark_absent(self, name: str, note: Optional[str] = None) -> Fact:
        return self.record_fact(name, None, FactState.ABSENT, note)

    def mark_not_applicable(self, name: str, reason: str) -> Fact:
        return self.record_fact(name, None, FactState.NOT_APPLICABLE, reason)

    def mark_unparseable(self, name: str, note: Optional[str] = None) -> Fact:
        return self.record_fact(name, None, FactState.UNPARSEABLE, note)

    def record_issue(self, kind: IssueKind, severity: Severity, detail: Optional[str] = None) -> Issue:
        self._check_writable()
        issue = Issue(kind=kind, severity=severity, detail=detail, sequence=len(self.issues))
        self.issues.append(issue)
        return issue

    def error(self, kind: IssueKind, detail: Optional[str] = None) -> Issue:
        return self.record_issue(kind, Severity.ERROR, detail)

    def warning(self, kind: IssueKind, detail: Optional[str] = None) -> Issue:
        return self.record_issue(kind, Severity.WARNING, detail)

    def seal(self) -> "LayerRecord":
        self._sealed = True
        return self

    def aborted(self, kind: IssueKind, detail: Optional[str] = None) -> "LayerRecord":
        """Copy of this record whose only issue is the given environment failure.

        Facts gathered before the abort are kept so the operator still sees them.
        """
        record = LayerRecord(layer=self.layer, facts=dict(self.facts))
        record.error(kind, detail)
        return record

    # ----- reads -----
    @property
    def sealed(self) -> bool:
        return self._sealed

    def fact(self, name: str) -> Optional[Fact]:
        return self.facts.get(name)

    def value(self, name: str, default: FactValue = None) -> FactValue:
        fact = self.facts.get(name)
        if fact is None or fact.state is not FactState.OBSERVED:
            return default
        return fact.value

    def errors(self) -> List[Issue]:
        return [i for i in self.issues if i.severity is Severity.ERROR]

    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if i.severity is Severity.WARNING]

    def has_issue(self, kind: IssueKind) -> bool:
        return any(i.kind is kind for i in self.issues)
