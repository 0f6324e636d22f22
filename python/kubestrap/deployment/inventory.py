"""
kubestrap/deployment/inventory.py

The Inventory Resolver: groups NodeRecords by their role attribute (no
hostname lookups, no tag matching) and renders the inventory files kept
with the cluster artifacts.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

import yaml

from kubestrap.models.inventory import InventoryGroup
from kubestrap.models.node import NodeRecord, sort_records
from kubestrap.models.topology import NodeRole

logger = logging.getLogger(__name__)


def resolve_inventory(records: Sequence[NodeRecord]) -> InventoryGroup:
    """
    Group ready nodes by role, ascending by stable identifier.

    Nodes that are not ready are left out of every group and listed in
    `excluded` so they can still be reported.
    """
    groups: Dict[NodeRole, List[NodeRecord]] = {role: [] for role in NodeRole}
    excluded: List[NodeRecord] = []
    for rec in sort_records(list(records)):
        if rec.is_ready and rec.private_ip:
            groups[rec.role].append(rec)
        else:
            excluded.append(rec)

    for rec in excluded:
        logger.warning(
            "Node %s (%s) excluded from inventory: status=%s%s",
            rec.node_id,
            rec.role.value,
            rec.status.value,
            f", error={rec.error}" if rec.error else "",
        )
    return InventoryGroup(groups=groups, excluded=excluded)


def _host_vars(rec: NodeRecord) -> Dict[str, str]:
    host_vars = {"private_ip": rec.private_ip or ""}
    if rec.public_ip:
        host_vars["public_ip"] = rec.public_ip
    return host_vars


def render_inventory(inventory: InventoryGroup) -> Dict[str, str]:
    """
    Render inventory files as relative path -> content:
      - inventory/hosts.yaml: YAML inventory with one child group per role
      - inventory/<role>.txt: one 'node_id private_ip [public_ip]' line per member
    """
    hosts_doc = {
        "all": {
            "children": {
                role.value: {
                    "hosts": {
                        rec.node_id: _host_vars(rec)
                        for rec in inventory.members(role)
                    }
                }
                for role in NodeRole
            }
        }
    }
    files = {
        "inventory/hosts.yaml": yaml.safe_dump(hosts_doc, sort_keys=False),
    }
    for role in NodeRole:
        lines = [
            " ".join(
                part for part in (rec.node_id, rec.private_ip, rec.public_ip) if part
            )
            for rec in inventory.members(role)
        ]
        files[f"inventory/{role.value}.txt"] = "".join(line + "\n" for line in lines)
    return files
