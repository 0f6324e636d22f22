"""
kubestrap/models/node.py

Defines Pydantic models for provisioned nodes:
 - NodeStatus
 - NodeRecord
 - LoadBalancerRecord
 - Outcome
 - ProvisionResult
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from kubestrap.errors import ProvisioningError
from kubestrap.models.resources import ResourceAction
from kubestrap.models.topology import NodeRole, node_sort_key


class NodeStatus(str, Enum):
    pending = "pending"
    ready = "ready"
    failed = "failed"


class NodeRecord(BaseModel):
    """Represents a single provisioned instance.

    Owned by the provisioner; every other component reads it only.

    Attributes:
        node_id: Stable identifier ('controller-0'); never changes once assigned.
        role: Node role; never changes once assigned.
        private_ip: Static private address, set once the provider confirms it.
        public_ip: Optional public address assigned by the provider.
        provider_id: Provider instance identifier, if created.
        status: pending / ready / failed.
        error: Cause of the last failure, if any.
    """

    model_config = ConfigDict(frozen=True)

    node_id: str
    role: NodeRole
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None
    provider_id: Optional[str] = None
    status: NodeStatus = NodeStatus.pending
    error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status is NodeStatus.ready

    @property
    def ssh_host(self) -> str:
        """Address used for remote execution (public if present)."""
        host = self.public_ip or self.private_ip
        if host is None:
            raise ValueError(f"Node '{self.node_id}' has no resolved address.")
        return host


class LoadBalancerRecord(BaseModel):
    """The API endpoint load balancer."""

    name: str
    provider_id: str
    dns_name: Optional[str] = None
    address: Optional[str] = None
    port: int = 6443

    @property
    def endpoint_names(self) -> List[str]:
        return [n for n in (self.address, self.dns_name) if n]


class Outcome(str, Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


def sort_records(records: List[NodeRecord]) -> List[NodeRecord]:
    return sorted(records, key=lambda r: node_sort_key(r.node_id))


class ProvisionResult(BaseModel):
    """Result of one provisioning pass.

    Attributes:
        records: Every known NodeRecord, ready or not, sorted by identifier.
        load_balancer: The API load balancer, once it exists.
        applied: Actions that were executed successfully.
        failures: Resource address -> failure cause.
        retained: Observed instances kept although no longer declared.
    """

    records: List[NodeRecord] = Field(default_factory=list)
    load_balancer: Optional[LoadBalancerRecord] = None
    applied: List[ResourceAction] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    retained: List[str] = Field(default_factory=list)

    @property
    def outcome(self) -> Outcome:
        if not self.failures:
            return Outcome.success
        if any(r.is_ready for r in self.records):
            return Outcome.partial
        return Outcome.failed

    @property
    def ready_nodes(self) -> List[NodeRecord]:
        return [r for r in self.records if r.is_ready]

    @property
    def failed_nodes(self) -> List[NodeRecord]:
        return [r for r in self.records if r.status is NodeStatus.failed]

    def raise_for_status(self) -> None:
        """Raise ProvisioningError unless every declared resource converged."""
        if self.failures:
            raise ProvisioningError(self)
