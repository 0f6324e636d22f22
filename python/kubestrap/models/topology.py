"""
kubestrap/models/topology.py

Defines the declarative cluster topology and the pure address plan derived
from it:
 - NodeRole
 - RoleAllocation
 - ClusterTopology
 - node_address / node_id helpers

The address plan is a pure function of (role, index): every role owns a
reserved sub-range of the subnet, so addresses never collide and a re-run
never reassigns an existing node.
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic import model_validator

from kubestrap.errors import ConfigurationError

_CLUSTER_NAME_RE = re.compile(r"^[a-z]([-a-z0-9]{0,38}[a-z0-9])?$")


class NodeRole(str, Enum):
    controller = "controller"
    etcd = "etcd"
    worker = "worker"


class RoleAllocation(BaseModel):
    """Node count and reserved address sub-range for one role.

    Attributes:
        count: Number of nodes of this role (at least one).
        first_offset: Host offset (inside the subnet) of the role's first node.
        reserved: Size of the sub-range reserved for the role; bounds `count`.
    """

    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=1)
    first_offset: int = Field(ge=1)
    reserved: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def check_count_fits(self) -> RoleAllocation:
        if self.count > self.reserved:
            raise ValueError(
                f"count {self.count} exceeds reserved sub-range size {self.reserved}"
            )
        return self

    @property
    def last_offset(self) -> int:
        """Last host offset of the reserved sub-range (inclusive)."""
        return self.first_offset + self.reserved - 1


def _default_roles() -> Dict[NodeRole, RoleAllocation]:
    return {
        NodeRole.controller: RoleAllocation(count=3, first_offset=10),
        NodeRole.etcd: RoleAllocation(count=3, first_offset=20),
        NodeRole.worker: RoleAllocation(count=3, first_offset=30),
    }


class ClusterTopology(BaseModel):
    """Immutable description of the target cluster.

    Invariants (checked on construction):
      - every CIDR parses, and the subnet lies inside the network range
      - role sub-ranges lie inside the subnet host range and never overlap
      - pod and service ranges are disjoint from the network and each other
      - ingress is never opened to an unrestricted (/0) range
    """

    model_config = ConfigDict(frozen=True)

    cluster_name: str = "kubestrap"
    region: str = "us-west-2"
    network_cidr: str = "10.43.0.0/16"
    subnet_cidr: str = "10.43.0.0/24"
    roles: Dict[NodeRole, RoleAllocation] = Field(default_factory=_default_roles)
    allowed_ingress_cidr: str
    pod_cidr: str = "10.200.0.0/16"
    service_cidr: str = "10.32.0.0/24"
    nonmasquerade_cidr: str = "10.0.0.0/8"
    dns_name: Optional[str] = None
    cluster_domain: str = "cluster.local"
    instance_type: str = "t3.small"
    image: str = "ubuntu-22.04"

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, value: str) -> str:
        if not _CLUSTER_NAME_RE.match(value):
            raise ValueError(
                "cluster_name must be a lower-case DNS label of at most 40 characters"
            )
        return value

    @field_validator(
        "network_cidr",
        "subnet_cidr",
        "allowed_ingress_cidr",
        "pod_cidr",
        "service_cidr",
        "nonmasquerade_cidr",
    )
    @classmethod
    def validate_cidr(cls, value: str) -> str:
        try:
            return str(ipaddress.ip_network(value, strict=True))
        except ValueError as exc:
            raise ValueError(f"'{value}' is not a valid network CIDR: {exc}") from exc

    @model_validator(mode="after")
    def check_address_plan(self) -> ClusterTopology:
        problems = topology_problems(self)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.network_cidr)

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.subnet_cidr)

    def count(self, role: NodeRole) -> int:
        return self.roles[role].count

    def node_ids(self, role: NodeRole) -> List[str]:
        return [node_id(role, i) for i in range(self.count(role))]

    def all_node_slots(self) -> List[Tuple[NodeRole, int]]:
        """Every (role, index) pair in role-declaration order."""
        return [
            (role, index)
            for role in NodeRole
            if role in self.roles
            for index in range(self.roles[role].count)
        ]

    def address_of(self, role: NodeRole, index: int) -> str:
        return node_address(self, role, index)

    def kubernetes_service_ip(self) -> str:
        """First usable address of the service range (the `kubernetes` service)."""
        return str(ipaddress.ip_network(self.service_cidr).network_address + 1)

    def cluster_dns_ip(self) -> str:
        return str(ipaddress.ip_network(self.service_cidr).network_address + 10)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


def topology_problems(topology: ClusterTopology) -> List[str]:
    """Return one message per violated cross-field invariant (empty if valid)."""
    problems: List[str] = []
    network = ipaddress.ip_network(topology.network_cidr)
    subnet = ipaddress.ip_network(topology.subnet_cidr)
    pod = ipaddress.ip_network(topology.pod_cidr)
    service = ipaddress.ip_network(topology.service_cidr)
    ingress = ipaddress.ip_network(topology.allowed_ingress_cidr)

    if any(net.version != 4 for net in (network, subnet, pod, service, ingress)):
        problems.append("only IPv4 ranges are supported")
        return problems

    if not subnet.subnet_of(network):  # type: ignore[arg-type]
        problems.append(
            f"subnet {subnet} is not inside network {network}"
        )
    if pod.overlaps(network):
        problems.append(f"pod range {pod} overlaps network range {network}")
    if service.overlaps(network):
        problems.append(f"service range {service} overlaps network range {network}")
    if service.overlaps(pod):
        problems.append(f"service range {service} overlaps pod range {pod}")
    if ingress.prefixlen == 0:
        problems.append(
            f"allowed ingress {ingress} would open access to every address"
        )

    missing = [role.value for role in NodeRole if role not in topology.roles]
    if missing:
        problems.append("missing role allocation(s): " + ", ".join(missing))

    host_limit = subnet.num_addresses - 2
    allocations = sorted(
        topology.roles.items(), key=lambda item: item[1].first_offset
    )
    for role, alloc in allocations:
        if alloc.last_offset > host_limit:
            problems.append(
                f"{role.value} sub-range [{alloc.first_offset}, {alloc.last_offset}] "
                f"exceeds subnet {subnet}"
            )

    for (role_a, alloc_a), (role_b, alloc_b) in zip(allocations, allocations[1:]):
        if alloc_b.first_offset <= alloc_a.last_offset:
            problems.append(
                f"{role_a.value} address range overlaps {role_b.value} address range"
            )

    return problems


def node_id(role: NodeRole, index: int) -> str:
    """Stable identifier for the index-th node of a role, e.g. 'worker-2'."""
    return f"{role.value}-{index}"


def parse_node_id(value: str) -> Tuple[NodeRole, int]:
    """Inverse of node_id; raises ValueError for foreign identifiers."""
    role_name, _, index = value.rpartition("-")
    if not index.isdigit():
        raise ValueError(f"Not a node identifier: '{value}'")
    return NodeRole(role_name), int(index)


def node_sort_key(value: str) -> Tuple[str, int]:
    """Natural ordering for identifiers so 'worker-10' sorts after 'worker-2'."""
    role_name, _, index = value.rpartition("-")
    return (role_name, int(index)) if index.isdigit() else (value, -1)


def node_address(topology: ClusterTopology, role: NodeRole, index: int) -> str:
    """Deterministic private address of the index-th node of a role.

    Raises:
        ValueError: If the index is outside the role's reserved sub-range.
    """
    alloc = topology.roles[role]
    if not 0 <= index < alloc.reserved:
        raise ValueError(
            f"{role.value} index {index} outside reserved sub-range of {alloc.reserved}"
        )
    return str(topology.subnet.network_address + alloc.first_offset + index)


def load_topology(data: Dict[str, Any]) -> ClusterTopology:
    """Validate raw topology data, converting pydantic errors to ConfigurationError."""
    try:
        return ClusterTopology.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            [
                f"{'.'.join(str(p) for p in err['loc']) or 'topology'}: {err['msg']}"
                for err in exc.errors()
            ]
        ) from exc


def load_topology_yaml(text: str) -> ClusterTopology:
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ConfigurationError(["topology document must be a mapping"])
    return load_topology(data)
