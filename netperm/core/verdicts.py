"""
Layer resolver: one authoritative outcome per layer record.

Order matters: each layer declares its error kinds as tiers, most
fundamental first (a missing route makes address or reachability findings
moot). The first tier holding an error wins; inside a tier the issue that was
recorded first wins. Warnings never fail a layer.
"""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from netperm.core.codes import (
    GeneralCode,
    IssueKind,
    Layer,
    LinkCode,
    NetworkCode,
    OutcomeStatus,
    PolicyCode,
    TransportCode,
)
from netperm.core.evidence import Issue, LayerRecord

K = IssueKind

PRIORITY_TABLES: Dict[Layer, Tuple[Tuple[IssueKind, ...], ...]] = {
    Layer.LINK: (
        (K.PERMISSION_DENIED,),
        (K.TOOLING_UNAVAILABLE,),
        (K.RFKILL_BLOCKED,),
        (K.NO_INTERFACE, K.LOOPBACK_ROUTING, K.TIMEOUT),
        (K.INTERFACE_DOWN,),
        (K.NO_CARRIER,),
        (K.WIFI_NOT_ASSOCIATED,),
        (K.NEIGHBOR_UNREACHABLE,),
    ),
    Layer.NETWORK: (
        (K.PERMISSION_DENIED,),
        (K.TOOLING_UNAVAILABLE,),
        (K.NO_ROUTE, K.LOOPBACK_ROUTING, K.TIMEOUT),
        (K.NO_IP_ADDRESS,),
        (K.GATEWAY_UNREACHABLE,),
        (K.DESTINATION_UNREACHABLE,),
    ),
    Layer.TRANSPORT: (
        (K.PERMISSION_DENIED,),
        (K.TOOLING_UNAVAILABLE,),
        (K.PORT_CLOSED, K.TIMEOUT),
    ),
    Layer.POLICY: (
        (K.PERMISSION_DENIED,),
        (K.EXPLICIT_BLOCK_RULE,),
        (K.DEFAULT_POLICY_DROP,),
    ),
}

CAUSE_CODES: Dict[Layer, Dict[IssueKind, int]] = {
    Layer.LINK: {
        K.PERMISSION_DENIED: GeneralCode.PRIVILEGE_REQUIRED,
        K.TOOLING_UNAVAILABLE: LinkCode.INTERFACE_DOWN,
        K.RFKILL_BLOCKED: LinkCode.RFKILL_BLOCKED,
        K.NO_INTERFACE: LinkCode.INTERFACE_DOWN,
        K.LOOPBACK_ROUTING: LinkCode.INTERFACE_DOWN,
        K.TIMEOUT: LinkCode.INTERFACE_DOWN,
        K.INTERFACE_DOWN: LinkCode.INTERFACE_DOWN,
        K.NO_CARRIER: LinkCode.NO_CARRIER,
        K.WIFI_NOT_ASSOCIATED: LinkCode.WIFI_NOT_ASSOCIATED,
        K.NEIGHBOR_UNREACHABLE: LinkCode.NEIGHBOR_UNREACHABLE,
    },
    Layer.NETWORK: {
        K.PERMISSION_DENIED: GeneralCode.PRIVILEGE_REQUIRED,
        K.TOOLING_UNAVAILABLE: NetworkCode.NO_ROUTE,
        K.NO_ROUTE: NetworkCode.NO_ROUTE,
        K.LOOPBACK_ROUTING: NetworkCode.NO_ROUTE,
        K.TIMEOUT: NetworkCode.NO_ROUTE,
        K.NO_IP_ADDRESS: NetworkCode.NO_IP_ADDRESS,
        K.GATEWAY_UNREACHABLE: NetworkCode.GATEWAY_UNREACHABLE,
        K.DESTINATION_UNREACHABLE: NetworkCode.DESTINATION_UNREACHABLE,
    },
    Layer.TRANSPORT: {
        K.PERMISSION_DENIED: GeneralCode.PRIVILEGE_REQUIRED,
        K.TOOLING_UNAVAILABLE: TransportCode.CAPABILITY_UNAVAILABLE,
        K.PORT_CLOSED: TransportCode.PORT_CLOSED,
        K.TIMEOUT: TransportCode.CONNECTION_TIMEOUT,
    },
    Layer.POLICY: {
        K.PERMISSION_DENIED: GeneralCode.PRIVILEGE_REQUIRED,
        K.EXPLICIT_BLOCK_RULE: PolicyCode.EXPLICIT_BLOCK,
        K.DEFAULT_POLICY_DROP: PolicyCode.DEFAULT_POLICY_DROP,
    },
}


class UnmappedIssueError(LookupError):
    """An error issue whose kind has no place in its layer's priority table."""


class LayerOutcome(BaseModel):
    layer: Layer
    status: OutcomeStatus
    cause_code: int = 0
    issue: Optional[IssueKind] = None
    detail: Optional[str] = None

    @property
    def passed(self) -> bool:
        """Pass or informational pass; both satisfy the layer."""
        return self.status is not OutcomeStatus.FAIL


def rank(layer: Layer, kind: IssueKind) -> int:
    for position, tier in enumerate(PRIORITY_TABLES[layer]):
        if kind in tier:
            return position
    raise UnmappedIssueError(f"{kind.value} is not a {layer.value} error kind")


def cause_code(layer: Layer, kind: IssueKind) -> int:
    try:
        return int(CAUSE_CODES[layer][kind])
    except KeyError:
        raise UnmappedIssueError(f"{kind.value} has no {layer.value} cause code") from None


def select_issue(record: LayerRecord) -> Optional[Issue]:
    """The single error issue that decides the layer, or None when there is none."""
    errors = record.errors()
    if not errors:
        return None
    return min(errors, key=lambda issue: (rank(record.layer, issue.kind), issue.sequence))


def resolve(record: LayerRecord) -> LayerOutcome:
    """Pure function of the record's issues."""
    winner = select_issue(record)
    if winner is not None:
        return LayerOutcome(
            layer=record.layer,
            status=OutcomeStatus.FAIL,
            cause_code=cause_code(record.layer, winner.kind),
            issue=winner.kind,
            detail=winner.detail,
        )

    if record.layer is Layer.POLICY:
        no_fw = next((i for i in record.issues if i.kind is K.NO_FIREWALL), None)
        if no_fw is not None:
            return LayerOutcome(
                layer=record.layer,
                status=OutcomeStatus.INFORMATIONAL_PASS,
                cause_code=int(PolicyCode.NO_FIREWALL),
                issue=K.NO_FIREWALL,
                detail=no_fw.detail,
            )

    return LayerOutcome(layer=record.layer, status=OutcomeStatus.PASS)


def reachable_codes(layer: Layer) -> Tuple[int, ...]:
    """Every cause code the resolver can produce for `layer` (informational pass included)."""
    codes = {int(code) for code in CAUSE_CODES[layer].values()}
    if layer is Layer.POLICY:
        codes.add(int(PolicyCode.NO_FIREWALL))
    return tuple(sorted(codes))
