"""
kubestrap/models/resources.py

Pydantic models for the provisioning interface:
 - ResourceKind
 - ResourceSpec: one declared resource of the desired-state document
 - ResourceState: one resource as observed at the provider
 - ResourceAction / ProvisionPlan: the diff between the two
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    """Resource kinds, declared in creation order."""

    network = "network"
    subnet = "subnet"
    gateway = "gateway"
    route_table = "route_table"
    security_group = "security_group"
    firewall_rule = "firewall_rule"
    iam_role = "iam_role"
    instance = "instance"
    load_balancer = "load_balancer"

    @property
    def tier(self) -> int:
        """Creation tier; resources of one tier only depend on lower tiers."""
        return _TIERS[self]


_TIERS: Dict[ResourceKind, int] = {
    ResourceKind.network: 0,
    ResourceKind.subnet: 1,
    ResourceKind.gateway: 1,
    ResourceKind.security_group: 1,
    ResourceKind.iam_role: 1,
    ResourceKind.route_table: 2,
    ResourceKind.firewall_rule: 2,
    ResourceKind.instance: 3,
    ResourceKind.load_balancer: 4,
}

# Properties that cannot change in place; a differing value means replacement.
IMMUTABLE_PROPERTIES: Dict[ResourceKind, Tuple[str, ...]] = {
    ResourceKind.instance: ("role", "node_id", "private_ip"),
    ResourceKind.network: ("cidr",),
    ResourceKind.subnet: ("cidr",),
}


class ResourceSpec(BaseModel):
    """A declared resource.

    Attributes:
        kind: What sort of resource this is.
        name: Unique name within its kind (e.g. 'worker-0', 'ingress-ssh').
        properties: Declared configuration handed to the provider.
    """

    kind: ResourceKind
    name: str
    properties: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[ResourceKind, str]:
        return (self.kind, self.name)

    @property
    def address(self) -> str:
        return f"{self.kind.value}/{self.name}"


class ResourceState(BaseModel):
    """A resource as it exists at the provider.

    Attributes:
        kind / name: Same identity as the ResourceSpec it was created from.
        provider_id: Identifier assigned by the provider.
        properties: The declared properties last applied.
        attributes: Provider-assigned values (public_ip, dns_name, ...).
    """

    kind: ResourceKind
    name: str
    provider_id: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[ResourceKind, str]:
        return (self.kind, self.name)

    @property
    def address(self) -> str:
        return f"{self.kind.value}/{self.name}"


class ActionKind(str, Enum):
    create = "create"
    update = "update"
    destroy = "destroy"


class ResourceAction(BaseModel):
    action: ActionKind
    spec: Optional[ResourceSpec] = None
    current: Optional[ResourceState] = None

    @property
    def kind(self) -> ResourceKind:
        if self.spec is not None:
            return self.spec.kind
        assert self.current is not None, "action without spec or current state"
        return self.current.kind

    @property
    def name(self) -> str:
        if self.spec is not None:
            return self.spec.name
        assert self.current is not None, "action without spec or current state"
        return self.current.name

    @property
    def address(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @property
    def is_destructive(self) -> bool:
        return self.action is ActionKind.destroy


class ProvisionPlan(BaseModel):
    """Minimal set of operations that converges observed state to desired state.

    Attributes:
        actions: Create/update/destroy operations to execute.
        retained: Observed instances no longer desired but kept, because
            removal requires explicit decommission.
        unchanged: Addresses of resources already in the desired state.
    """

    actions: List[ResourceAction] = Field(default_factory=list)
    retained: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    @property
    def destructive_actions(self) -> List[ResourceAction]:
        return [a for a in self.actions if a.is_destructive]

    def by_tier(self) -> List[List[ResourceAction]]:
        """Group actions into tiers; destroys run first, in reverse tier order."""
        destroys = sorted(
            self.destructive_actions,
            key=lambda a: -a.kind.tier,
        )
        tiers: Dict[int, List[ResourceAction]] = {}
        for action in self.actions:
            if not action.is_destructive:
                tiers.setdefault(action.kind.tier, []).append(action)
        destroy_groups = [[a] for a in destroys]
        return destroy_groups + [tiers[t] for t in sorted(tiers)]

    def summary(self) -> Dict[str, int]:
        return {
            kind.value: sum(1 for a in self.actions if a.action is kind)
            for kind in ActionKind
        }
