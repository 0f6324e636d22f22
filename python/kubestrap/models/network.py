"""
kubestrap/models/network.py

Defines Pydantic models for pod networking:
 - PodSubnetAssignment: node_id -> discovered pod CIDR
 - Route / MasqueradeRule: routing state installed on worker nodes
 - ReconcilerState / ReconcileResult
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from kubestrap.errors import ReconciliationTimeout, RoutingError


class PodSubnetAssignment(BaseModel):
    """Discovered pod subnets, keyed by node identifier."""

    subnets: Dict[str, str] = Field(default_factory=dict)

    def subnet_of(self, node_id: str) -> str:
        return self.subnets[node_id]

    def unresolved(self, node_ids: List[str]) -> List[str]:
        return [n for n in node_ids if not self.subnets.get(n)]


class Route(BaseModel):
    """On `node_id`, send traffic for `destination` via `gateway`."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    destination: str
    gateway: str
    target_node_id: str

    def command(self) -> List[str]:
        return ["sudo", "ip", "route", "replace", self.destination, "via", self.gateway]


class MasqueradeRule(BaseModel):
    """Rewrite outbound traffic unless it is destined for `exclude_destination`."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    exclude_destination: str

    def rule_args(self) -> List[str]:
        return [
            "POSTROUTING",
            "!",
            "-d",
            self.exclude_destination,
            "-j",
            "MASQUERADE",
        ]


class ReconcilerState(str, Enum):
    awaiting_assignments = "awaiting-assignments"
    routes_installed = "routes-installed"


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation pass.

    Attributes:
        state: `routes-installed` only when every worker had an assignment
            and its routing state was applied.
        assignments: Subnets discovered, by node id.
        routes: Routes installed in this pass.
        masquerade_rules: Masquerade rules ensured in this pass.
        removed_routes: Stale routes deleted, as 'node_id: destination'.
        unresolved: Workers that never reported a subnet.
        failures: Workers whose routing state failed, with the failing step.
    """

    state: ReconcilerState = ReconcilerState.awaiting_assignments
    assignments: PodSubnetAssignment = Field(default_factory=PodSubnetAssignment)
    routes: List[Route] = Field(default_factory=list)
    masquerade_rules: List[MasqueradeRule] = Field(default_factory=list)
    removed_routes: List[str] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 0.0

    def raise_for_status(self) -> None:
        if self.unresolved:
            raise ReconciliationTimeout(self.unresolved, self.timeout)
        if self.failures:
            raise RoutingError(self.failures)
