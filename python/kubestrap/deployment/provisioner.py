"""
kubestrap/deployment/provisioner.py

The Resource Provisioner. Derives the desired-state document from a
ClusterTopology, diffs it against what the provider reports, and executes
the minimal set of create/update/destroy operations tier by tier:

  1) desired_resources: topology -> ResourceSpecs (network, rules, instances, LB)
  2) plan_changes: desired + observed -> ProvisionPlan (pure, no provider calls);
     preview_plan wraps it with a provider observation for dry runs
  3) provision: prepare/observe/plan/execute -> ProvisionResult

Independent resources of one tier (e.g. the instances of one role) are
created concurrently. A failed resource is recorded in the result; it never
rolls back siblings that already succeeded, and re-running converges the rest.
Observed instances that are no longer declared are retained unless their node
id is passed for decommission.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from kubestrap.deployment.providers import ResourceProvider
from kubestrap.errors import ConfigurationError, ProvisioningError
from kubestrap.models.node import (
    LoadBalancerRecord,
    NodeRecord,
    NodeStatus,
    ProvisionResult,
    sort_records,
)
from kubestrap.models.resources import (
    IMMUTABLE_PROPERTIES,
    ActionKind,
    ProvisionPlan,
    ResourceAction,
    ResourceKind,
    ResourceSpec,
    ResourceState,
)
from kubestrap.models.topology import ClusterTopology, NodeRole, node_id
from kubestrap.utils.async_retry import SleepFunc, retry_call

logger = logging.getLogger(__name__)

API_PORT = 6443
LOAD_BALANCER_NAME = "api"

ResourceKey = Tuple[ResourceKind, str]
T = TypeVar("T")


# ----------------------------------------------------------------------
# 1) Desired state
# ----------------------------------------------------------------------


def _firewall_rule(
    name: str, cidr: str, protocol: str, port: str, direction: str = "ingress"
) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.firewall_rule,
        name=name,
        properties={
            "security_group": "cluster",
            "direction": direction,
            "protocol": protocol,
            "port": port,
            "cidr": cidr,
        },
    )


def desired_resources(topology: ClusterTopology) -> List[ResourceSpec]:
    """Full desired-state document for a topology.

    Every property value is a string so it survives a round trip through
    provider tags unchanged.
    """
    cluster = topology.cluster_name
    specs: List[ResourceSpec] = [
        ResourceSpec(
            kind=ResourceKind.network,
            name="main",
            properties={"cidr": topology.network_cidr, "cluster": cluster},
        ),
        ResourceSpec(
            kind=ResourceKind.subnet,
            name="nodes",
            properties={
                "cidr": topology.subnet_cidr,
                "network": "main",
                "region": topology.region,
            },
        ),
        ResourceSpec(
            kind=ResourceKind.gateway,
            name="internet",
            properties={"network": "main"},
        ),
        ResourceSpec(
            kind=ResourceKind.security_group,
            name="cluster",
            properties={"network": "main", "description": f"{cluster} nodes"},
        ),
        ResourceSpec(
            kind=ResourceKind.iam_role,
            name="node",
            properties={"role_name": f"{cluster}-node"},
        ),
        ResourceSpec(
            kind=ResourceKind.route_table,
            name="default",
            properties={
                "network": "main",
                "subnet": "nodes",
                "gateway": "internet",
                "destination": "0.0.0.0/0",
            },
        ),
        _firewall_rule("ingress-ssh", topology.allowed_ingress_cidr, "tcp", "22"),
        _firewall_rule(
            "ingress-api", topology.allowed_ingress_cidr, "tcp", str(API_PORT)
        ),
        _firewall_rule("ingress-icmp", topology.allowed_ingress_cidr, "icmp", "-1"),
        _firewall_rule("internal-network", topology.network_cidr, "-1", "-1"),
        _firewall_rule("internal-pods", topology.pod_cidr, "-1", "-1"),
    ]

    for role, index in topology.all_node_slots():
        nid = node_id(role, index)
        specs.append(
            ResourceSpec(
                kind=ResourceKind.instance,
                name=nid,
                properties={
                    "cluster": cluster,
                    "role": role.value,
                    "node_id": nid,
                    "private_ip": topology.address_of(role, index),
                    "instance_type": topology.instance_type,
                    "image": topology.image,
                    "subnet": "nodes",
                    "security_group": "cluster",
                    "iam_role": "node",
                    # pod traffic is routed through nodes by address
                    "source_dest_check": "false",
                },
            )
        )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.load_balancer,
            name=LOAD_BALANCER_NAME,
            properties={
                "subnet": "nodes",
                "port": str(API_PORT),
                "targets": ",".join(topology.node_ids(NodeRole.controller)),
            },
        )
    )
    return specs


# ----------------------------------------------------------------------
# 2) Planning
# ----------------------------------------------------------------------


def open_ingress_problems(specs: Iterable[ResourceSpec]) -> List[str]:
    """Firewall rules that would accept traffic from every address."""
    problems: List[str] = []
    for spec in specs:
        if spec.kind is not ResourceKind.firewall_rule:
            continue
        if spec.properties.get("direction", "ingress") != "ingress":
            continue
        cidr = str(spec.properties.get("cidr", ""))
        try:
            prefixlen = ipaddress.ip_network(cidr, strict=False).prefixlen
        except ValueError:
            problems.append(f"firewall rule '{spec.name}' has invalid source '{cidr}'")
            continue
        if prefixlen == 0:
            problems.append(
                f"firewall rule '{spec.name}' would open ingress to {cidr}"
            )
    return problems


def _immutable_changes(spec: ResourceSpec, current: ResourceState) -> List[str]:
    return [
        f"{spec.address}: {prop} cannot change "
        f"({current.properties.get(prop)!r} -> {spec.properties.get(prop)!r})"
        for prop in IMMUTABLE_PROPERTIES.get(spec.kind, ())
        if prop in current.properties
        and current.properties.get(prop) != spec.properties.get(prop)
    ]


def plan_changes(
    desired: Sequence[ResourceSpec],
    observed: Sequence[ResourceState],
    decommission: Iterable[str] = (),
) -> ProvisionPlan:
    """Minimal set of actions converging `observed` to `desired`.

    Args:
        desired: The declared resources.
        observed: What the provider reports.
        decommission: Node ids whose instances may be destroyed.

    Raises:
        ConfigurationError: On duplicate declarations, open ingress, a change to
            an immutable property, or a decommission of a declared node.
    """
    problems = open_ingress_problems(desired)

    desired_by_key: Dict[ResourceKey, ResourceSpec] = {}
    for spec in desired:
        if spec.key in desired_by_key:
            problems.append(f"{spec.address} declared twice")
        desired_by_key[spec.key] = spec
    observed_by_key: Dict[ResourceKey, ResourceState] = {s.key: s for s in observed}
    to_decommission = set(decommission)

    for name in sorted(to_decommission):
        if (ResourceKind.instance, name) in desired_by_key:
            problems.append(
                f"instance/{name} is still declared by the topology; "
                "reduce the role count before decommissioning it"
            )

    plan = ProvisionPlan()
    for key, spec in desired_by_key.items():
        current = observed_by_key.get(key)
        if current is None:
            plan.actions.append(ResourceAction(action=ActionKind.create, spec=spec))
        elif current.properties != spec.properties:
            problems.extend(_immutable_changes(spec, current))
            plan.actions.append(
                ResourceAction(action=ActionKind.update, spec=spec, current=current)
            )
        else:
            plan.unchanged.append(spec.address)

    for key, current in observed_by_key.items():
        if key in desired_by_key:
            continue
        is_instance = current.kind is ResourceKind.instance
        if is_instance and current.name not in to_decommission:
            plan.retained.append(current.name)
            continue
        plan.actions.append(ResourceAction(action=ActionKind.destroy, current=current))

    if problems:
        raise ConfigurationError(problems)
    plan.retained.sort()
    return plan


# ----------------------------------------------------------------------
# 3) Execution
# ----------------------------------------------------------------------


def _merge_record(previous: Optional[NodeRecord], record: NodeRecord) -> NodeRecord:
    """Keep identity fixed across runs; fill a missing address from history."""
    if previous is None:
        return record
    problems: List[str] = []
    if previous.role is not record.role:
        problems.append(
            f"node {record.node_id}: role cannot change "
            f"({previous.role.value} -> {record.role.value})"
        )
    if (
        previous.private_ip
        and record.private_ip
        and previous.private_ip != record.private_ip
    ):
        problems.append(
            f"node {record.node_id}: private address cannot change "
            f"({previous.private_ip} -> {record.private_ip})"
        )
    if problems:
        raise ConfigurationError(problems)
    if record.private_ip is None and previous.private_ip is not None:
        return record.model_copy(update={"private_ip": previous.private_ip})
    return record


def _record_from_state(state: ResourceState) -> NodeRecord:
    return NodeRecord(
        node_id=state.name,
        role=NodeRole(state.properties["role"]),
        private_ip=state.attributes.get("private_ip")
        or state.properties.get("private_ip"),
        public_ip=state.attributes.get("public_ip"),
        provider_id=state.provider_id,
        status=NodeStatus.ready,
    )


def _load_balancer_from_state(state: ResourceState) -> LoadBalancerRecord:
    return LoadBalancerRecord(
        name=state.name,
        provider_id=state.provider_id,
        dns_name=state.attributes.get("dns_name"),
        address=state.attributes.get("address"),
        port=int(state.properties.get("port", API_PORT)),
    )


async def preview_plan(
    topology: ClusterTopology,
    provider: ResourceProvider,
    decommission: Iterable[str] = (),
) -> ProvisionPlan:
    """The plan `provision` would execute, computed without executing it."""
    desired = desired_resources(topology)
    problems = open_ingress_problems(desired)
    if problems:
        raise ConfigurationError(problems)
    await provider.prepare(desired)
    return plan_changes(desired, await provider.observe(), decommission)


async def provision(
    topology: ClusterTopology,
    provider: ResourceProvider,
    previous_records: Sequence[NodeRecord] = (),
    decommission: Iterable[str] = (),
    retries: int = 3,
    retry_delay: float = 5.0,
    sleep: SleepFunc = asyncio.sleep,
) -> ProvisionResult:
    """Converge provider resources to the topology and report node records.

    The topology is validated and the plan computed before the first mutating
    provider call, so a rejected configuration never creates anything.

    Returns:
        ProvisionResult with every node record (ready, failed or retained),
        the load balancer, executed actions and per-resource failures.

    Raises:
        ConfigurationError: If the plan is rejected.
        ProvisioningError: If the provider cannot be prepared or observed;
            nothing has been changed and the previous records are reported.
    """
    desired = desired_resources(topology)
    problems = open_ingress_problems(desired)
    if problems:
        raise ConfigurationError(problems)

    async def _call(func: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_call(
            func,
            retries=retries,
            delay=retry_delay,
            noisy=True,
            sleep=sleep,
            description=description,
        )

    step = "prepare"
    try:
        await provider.prepare(desired)
        step = "observe"
        observed = await _call(provider.observe, "observe")
    except Exception as exc:  # provider unusable; nothing was changed
        cause = str(exc) or exc.__class__.__name__
        logger.error(
            "Cluster '%s': provider %s failed: %s", topology.cluster_name, step, cause
        )
        raise ProvisioningError(
            ProvisionResult(
                records=sort_records(list(previous_records)),
                failures={f"provider/{step}": cause},
            )
        ) from exc

    plan = plan_changes(desired, observed, decommission)
    logger.info(
        "Cluster '%s' plan: %s (unchanged=%d, retained=%d)",
        topology.cluster_name,
        plan.summary(),
        len(plan.unchanged),
        len(plan.retained),
    )

    states: Dict[ResourceKey, ResourceState] = {s.key: s for s in observed}
    applied: List[ResourceAction] = []
    failures: Dict[str, str] = {}

    async def _execute(action: ResourceAction) -> None:
        try:
            if action.action is ActionKind.create:
                assert action.spec is not None
                spec = action.spec
                states[spec.key] = await _call(
                    lambda: provider.create(spec), f"create {action.address}"
                )
            elif action.action is ActionKind.update:
                assert action.spec is not None and action.current is not None
                spec, current = action.spec, action.current
                states[spec.key] = await _call(
                    lambda: provider.update(spec, current), f"update {action.address}"
                )
            else:
                assert action.current is not None
                current = action.current
                await _call(
                    lambda: provider.destroy(current), f"destroy {action.address}"
                )
                states.pop(current.key, None)
        except Exception as exc:  # recorded per resource; siblings continue
            logger.error("Provisioning %s failed: %s", action.address, exc)
            failures[action.address] = str(exc) or exc.__class__.__name__
            return
        applied.append(action)

    for group in plan.by_tier():
        blocking = [
            address
            for address in failures
            if not address.startswith(ResourceKind.instance.value + "/")
        ]
        if blocking:
            for action in group:
                failures[action.address] = "blocked by failed " + ", ".join(
                    sorted(blocking)
                )
            continue
        await asyncio.gather(*(_execute(action) for action in group))

    previous_by_id = {rec.node_id: rec for rec in previous_records}
    decommissioned = set(decommission)
    records: List[NodeRecord] = []
    for role, index in topology.all_node_slots():
        nid = node_id(role, index)
        address = f"{ResourceKind.instance.value}/{nid}"
        state = states.get((ResourceKind.instance, nid))
        if address in failures or state is None:
            record = NodeRecord(
                node_id=nid,
                role=role,
                provider_id=state.provider_id if state else None,
                status=NodeStatus.failed,
                error=failures.get(address, "instance missing after provisioning"),
            )
        else:
            record = _record_from_state(state)
        records.append(_merge_record(previous_by_id.get(nid), record))

    for nid in plan.retained:
        state = states[(ResourceKind.instance, nid)]
        record = _record_from_state(state)
        records.append(_merge_record(previous_by_id.get(nid), record))

    for nid in sorted(decommissioned):
        if (ResourceKind.instance, nid) not in states:
            logger.info("Node %s decommissioned", nid)

    lb_state = states.get((ResourceKind.load_balancer, LOAD_BALANCER_NAME))
    result = ProvisionResult(
        records=sort_records(records),
        load_balancer=_load_balancer_from_state(lb_state) if lb_state else None,
        applied=applied,
        failures=failures,
        retained=plan.retained,
    )
    logger.info(
        "Cluster '%s' provisioning %s: %d ready, %d failed",
        topology.cluster_name,
        result.outcome.value,
        len(result.ready_nodes),
        len(result.failed_nodes),
    )
    return result
