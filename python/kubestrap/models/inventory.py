"""
kubestrap/models/inventory.py

Defines the InventoryGroup model: role -> NodeRecords, recomputed from
provisioner state on every run and never persisted on its own.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

from kubestrap.models.node import NodeRecord
from kubestrap.models.topology import NodeRole


class InventoryGroup(BaseModel):
    """Role groups of installable nodes.

    Attributes:
        groups: Role -> ready nodes, ascending by stable identifier.
        excluded: Nodes not in `ready` state; kept for diagnostics only.
    """

    groups: Dict[NodeRole, List[NodeRecord]] = Field(default_factory=dict)
    excluded: List[NodeRecord] = Field(default_factory=list)

    def members(self, role: NodeRole) -> List[NodeRecord]:
        return list(self.groups.get(role, []))

    @property
    def all(self) -> List[NodeRecord]:
        """Flattened group of every installable node, in role order."""
        return [rec for role in NodeRole for rec in self.groups.get(role, [])]

    def addresses(self, role: NodeRole) -> List[str]:
        return [rec.private_ip for rec in self.members(role) if rec.private_ip]

    def find(self, node_id: str) -> NodeRecord:
        for rec in self.all:
            if rec.node_id == node_id:
                return rec
        raise KeyError(f"Node '{node_id}' is not in the inventory.")
