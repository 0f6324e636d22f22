"""
kubestrap/models/state.py

Defines Pydantic models for the persisted state of a cluster and the
report of one bootstrap run:
 - BarrierStep
 - RunJournal
 - ClusterState
 - BootstrapReport
"""

from __future__ import annotations

import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from kubestrap.models.install import InstallReport, RoleState
from kubestrap.models.inventory import InventoryGroup
from kubestrap.models.network import ReconcileResult
from kubestrap.models.node import LoadBalancerRecord, NodeRecord, ProvisionResult
from kubestrap.models.pki import CertificateBundle
from kubestrap.models.topology import NodeRole


class BarrierStep(str, Enum):
    """Barrier steps of a run, in execution order."""

    provision = "provision"
    inventory = "inventory"
    pki = "pki"
    install = "install"
    network = "network"

    @classmethod
    def ordered(cls) -> List[BarrierStep]:
        return list(cls)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class RunJournal(BaseModel):
    """Progress of the most recent run.

    Attributes:
        started_at: When the run began (ISO 8601, UTC).
        finished_at: When the run completed every step; None while running
            or after an aborted run.
        completed: Barrier steps completed by the run, in order.
        role_states: Installer state per role as last reported.
        error: The fatal error that ended the run, if any.
    """

    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    completed: List[BarrierStep] = Field(default_factory=list)
    role_states: Dict[NodeRole, RoleState] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def last_completed(self) -> Optional[BarrierStep]:
        return self.completed[-1] if self.completed else None

    @property
    def interrupted(self) -> bool:
        """True if a run started but neither finished nor recorded an error."""
        return (
            self.started_at is not None
            and self.finished_at is None
            and self.error is None
        )

    def begin(self) -> None:
        self.started_at = _now()
        self.finished_at = None
        self.completed = []
        self.error = None

    def complete(self, step: BarrierStep) -> None:
        if step not in self.completed:
            self.completed.append(step)
        if step is BarrierStep.ordered()[-1]:
            self.finished_at = _now()


class ClusterState(BaseModel):
    """Everything persisted between runs for one cluster.

    NodeRecords are written only by the provisioning step; every other step
    reads them.
    """

    cluster_name: str
    records: List[NodeRecord] = Field(default_factory=list)
    load_balancer: Optional[LoadBalancerRecord] = None
    bundle: Optional[CertificateBundle] = None
    api_endpoint: Optional[str] = None
    pod_subnets: Dict[str, str] = Field(default_factory=dict)
    journal: RunJournal = Field(default_factory=RunJournal)


class BootstrapReport(BaseModel):
    """Aggregated outcome of a bootstrap run (partial when a step failed)."""

    cluster_name: str
    provision: Optional[ProvisionResult] = None
    inventory: Optional[InventoryGroup] = None
    certificate_changed: bool = False
    api_endpoint: Optional[str] = None
    install: Optional[InstallReport] = None
    network: Optional[ReconcileResult] = None
    completed: List[BarrierStep] = Field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.completed == BarrierStep.ordered()

    def summary_lines(self) -> List[str]:
        lines = [f"cluster: {self.cluster_name}"]
        if self.provision is not None:
            lines.append(
                f"provision: {self.provision.outcome.value} "
                f"({len(self.provision.ready_nodes)} ready, "
                f"{len(self.provision.failed_nodes)} failed, "
                f"{len(self.provision.applied)} change(s))"
            )
        if self.api_endpoint:
            lines.append(f"api endpoint: {self.api_endpoint}")
        if BarrierStep.pki in self.completed:
            lines.append(
                "certificates: "
                + ("re-signed" if self.certificate_changed else "unchanged")
            )
        if self.install is not None:
            for role, role_report in self.install.roles.items():
                lines.append(f"role {role.value}: {role_report.state.value}")
        if self.network is not None:
            lines.append(
                f"network: {self.network.state.value} "
                f"({len(self.network.routes)} route(s), "
                f"{len(self.network.masquerade_rules)} masquerade rule(s))"
            )
        return lines
