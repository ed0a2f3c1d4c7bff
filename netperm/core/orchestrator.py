"""
Run orchestration: privilege check, target validation, then the four probes
in fixed order (Link -> Network -> Transport -> Policy).

Every probe runs regardless of what earlier layers found; the point of the
tool is to show *all* the evidence, not stop at the first red light.
Cancellation is only honoured between layers, so a record is never half
written.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from netperm.config import Settings, get_settings
from netperm.core.codes import LAYER_ORDER, Layer
from netperm.core.evidence import LayerRecord
from netperm.core.host import HostInspector, LinuxHost
from netperm.core.preflight import Target, has_privilege, require_privilege, resolve_target
from netperm.core.probes import LinkProbe, NetworkProbe, PathContext, PolicyProbe, Probe, TransportProbe
from netperm.core.verdicts import LayerOutcome, resolve

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    LINK_RUNNING = "link_running"
    NETWORK_RUNNING = "network_running"
    TRANSPORT_RUNNING = "transport_running"
    POLICY_RUNNING = "policy_running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


RUNNING_STATE: Dict[Layer, RunState] = {
    Layer.LINK: RunState.LINK_RUNNING,
    Layer.NETWORK: RunState.NETWORK_RUNNING,
    Layer.TRANSPORT: RunState.TRANSPORT_RUNNING,
    Layer.POLICY: RunState.POLICY_RUNNING,
}

VALID_TRANSITIONS: Dict[RunState, List[RunState]] = {
    RunState.NOT_STARTED: [RunState.LINK_RUNNING, RunState.CANCELLED],
    RunState.LINK_RUNNING: [RunState.NETWORK_RUNNING, RunState.CANCELLED],
    RunState.NETWORK_RUNNING: [RunState.TRANSPORT_RUNNING, RunState.CANCELLED],
    RunState.TRANSPORT_RUNNING: [RunState.POLICY_RUNNING, RunState.CANCELLED],
    RunState.POLICY_RUNNING: [RunState.COMPLETE],
    RunState.COMPLETE: [],
    RunState.CANCELLED: [],
}


class InvalidStateTransition(Exception):
    def __init__(self, from_state: RunState, to_state: RunState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid run transition: {from_state.value} -> {to_state.value}")


class RunStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class RunResult(BaseModel):
    target: str
    address: str
    port: int
    protocol: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    outcomes: List[LayerOutcome] = Field(default_factory=list)
    records: List[LayerRecord] = Field(default_factory=list)

    @property
    def layers_total(self) -> int:
        return len(LAYER_ORDER)

    @property
    def layers_passed(self) -> int:
        return sum(1 for o in self.outcomes if o.passed)

    @property
    def failed_layers(self) -> List[Layer]:
        return [o.layer for o in self.outcomes if not o.passed]

    @property
    def permitted(self) -> bool:
        """All four layers resolved and none failed."""
        return self.status is RunStatus.COMPLETE and not self.failed_layers

    @property
    def first_failure(self) -> Optional[LayerOutcome]:
        return next((o for o in self.outcomes if not o.passed), None)

    @property
    def exit_code(self) -> int:
        failure = self.first_failure
        return failure.cause_code if failure is not None else 0

    def outcome(self, layer: Layer) -> Optional[LayerOutcome]:
        return next((o for o in self.outcomes if o.layer is layer), None)

    def record(self, layer: Layer) -> Optional[LayerRecord]:
        return next((r for r in self.records if r.layer is layer), None)


TransitionCallback = Callable[[RunState, RunState], None]


class RunLifecycle:
    """Tracks the run state and refuses illegal jumps."""

    def __init__(self, on_transition: Optional[TransitionCallback] = None):
        self.state = RunState.NOT_STARTED
        self._on_transition = on_transition

    def advance(self, new_state: RunState) -> None:
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, new_state)
        old_state, self.state = self.state, new_state
        logger.debug("run state %s -> %s", old_state.value, new_state.value)
        if self._on_transition is not None:
            self._on_transition(old_state, new_state)


def default_probes(host: HostInspector) -> Dict[Layer, Probe]:
    return {
        Layer.LINK: LinkProbe(host),
        Layer.NETWORK: NetworkProbe(host),
        Layer.TRANSPORT: TransportProbe(host),
        Layer.POLICY: PolicyProbe(host),
    }


class Orchestrator:
    def __init__(
        self,
        host: Optional[HostInspector] = None,
        settings: Optional[Settings] = None,
        privilege_check: Callable[[], bool] = has_privilege,
        on_transition: Optional[TransitionCallback] = None,
        probes: Optional[Dict[Layer, Probe]] = None,
    ):
        self.settings = settings or get_settings()
        self.host = host if host is not None else LinuxHost(self.settings)
        self.privilege_check = privilege_check
        self.on_transition = on_transition
        self.probes = probes if probes is not None else default_probes(self.host)

    def diagnose(
        self,
        target: Optional[str] = None,
        port: Optional[int] = None,
        protocol: Optional[str] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        """Run the four layers against one destination.

        Raises PrivilegeError / InvalidTargetError before any probe runs.
        """
        require_privilege(self.privilege_check)
        resolved = resolve_target(
            target if target is not None else self.settings.default_target,
            port if port is not None else self.settings.default_port,
            protocol if protocol is not None else self.settings.default_protocol,
        )
        logger.info("diagnosing %s (%s)", resolved, resolved.address)
        return self._run(resolved, cancel)

    def _run(self, target: Target, cancel: Optional[threading.Event]) -> RunResult:
        lifecycle = RunLifecycle(self.on_transition)
        started = datetime.now(timezone.utc)
        records: List[LayerRecord] = []
        outcomes: List[LayerOutcome] = []
        path = PathContext()

        for layer in LAYER_ORDER:
            if cancel is not None and cancel.is_set():
                logger.warning("run cancelled before %s layer", layer.value)
                lifecycle.advance(RunState.CANCELLED)
                break
            lifecycle.advance(RUNNING_STATE[layer])
            record = self.probes[layer].run(target, path)
            outcome = resolve(record)
            logger.info("%s layer: %s (code %d)", layer.value, outcome.status.value, outcome.cause_code)
            records.append(record)
            outcomes.append(outcome)
            if layer is Layer.LINK:
                path = PathContext.from_link_record(record)
        else:
            lifecycle.advance(RunState.COMPLETE)

        return RunResult(
            target=target.host,
            address=target.address,
            port=target.port,
            protocol=target.protocol,
            status=RunStatus.COMPLETE if lifecycle.state is RunState.COMPLETE else RunStatus.INCOMPLETE,
            started_at=started,
            finished_at=datetime.now(timezone.utc),
            outcomes=outcomes,
            records=records,
        )


def diagnose(
    target: Optional[str] = None,
    port: Optional[int] = None,
    protocol: Optional[str] = None,
    *,
    cancel: Optional[threading.Event] = None,
    host: Optional[HostInspector] = None,
) -> RunResult:
    """One-shot convenience wrapper around Orchestrator."""
    return Orchestrator(host=host).diagnose(target, port, protocol, cancel=cancel)
