"""
kubestrap/deployment/network.py

The Network Reconciler. After the worker role is verified:

  1) poll the control plane for each worker's pod subnet, at a fixed interval,
     until every worker has one or the timeout elapses
  2) on every assigned worker A, for every other assigned worker B, route B's
     pod subnet via B's node address
  3) on every worker, masquerade outbound traffic unless it is destined for
     the internal (non-masquerade) range
  4) write each assigned worker's bridge CNI config for its own subnet

The reconciler keeps no incremental state: every pass recomputes the full
route set from the discovered assignments. When every worker is assigned,
routes inside the pod range that are not part of that set (e.g. pointing at
a replaced node's old address) are deleted. After a timeout nothing is
removed, and only routes between assigned workers are installed.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from kubestrap.deployment.tasks import NodeExecutor, apply_task
from kubestrap.deployment.units import CNI_CONF_DIR, render_cni_bridge_config
from kubestrap.models.install import UploadFile
from kubestrap.models.network import (
    MasqueradeRule,
    PodSubnetAssignment,
    ReconcileResult,
    ReconcilerState,
    Route,
)
from kubestrap.models.node import NodeRecord
from kubestrap.models.topology import node_sort_key
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.async_retry import SleepFunc
from kubestrap.utils.kubectl import get_pod_cidrs

logger = logging.getLogger(__name__)

# node address -> pod CIDR ("" while unassigned)
SubnetSource = Callable[[], Awaitable[Dict[str, str]]]
Clock = Callable[[], float]

CNI_BRIDGE_CONF = f"{CNI_CONF_DIR}/10-bridge.conf"


def kubectl_subnet_source(
    executor: NodeExecutor, controller: NodeRecord, kubeconfig: str
) -> SubnetSource:
    """SubnetSource querying 'kubectl get nodes' on a controller."""

    async def _run(args: List[str]) -> str:
        return await executor.run(controller, ["sudo"] + args, retries=1)

    async def _query() -> Dict[str, str]:
        return await get_pod_cidrs(_run, kubeconfig=kubeconfig)

    return _query


async def discover_pod_subnets(
    workers: Sequence[NodeRecord],
    source: SubnetSource,
    timeout: float,
    interval: float,
    sleep: SleepFunc = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> PodSubnetAssignment:
    """
    Poll `source` until every worker has a pod subnet or `timeout` elapses.

    Returns:
        The assignments found; unassigned workers are simply absent.
    """
    node_ids = [w.node_id for w in workers]
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            by_address = await source()
        except (CommandError, ValueError) as exc:
            logger.warning("Pod subnet query %d failed: %s", attempt, exc)
            by_address = {}

        assignment = PodSubnetAssignment(
            subnets={
                w.node_id: by_address[w.private_ip]
                for w in workers
                if w.private_ip and by_address.get(w.private_ip)
            }
        )
        unresolved = assignment.unresolved(node_ids)
        if not unresolved:
            logger.info("Pod subnets assigned for all %d worker(s)", len(node_ids))
            return assignment

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(
                "Pod subnets still missing after %.0fs: %s",
                timeout,
                ", ".join(unresolved),
            )
            return assignment
        logger.info(
            "Waiting for pod subnets (%d/%d assigned)",
            len(node_ids) - len(unresolved),
            len(node_ids),
        )
        await sleep(min(interval, remaining))


def compute_routes(
    workers: Sequence[NodeRecord], assignment: PodSubnetAssignment
) -> List[Route]:
    """One route per ordered pair of distinct assigned workers."""
    assigned = [
        w for w in workers if assignment.subnets.get(w.node_id) and w.private_ip
    ]
    routes: List[Route] = []
    for node in assigned:
        own = assignment.subnet_of(node.node_id)
        for peer in assigned:
            if peer.node_id == node.node_id:
                continue
            destination = assignment.subnet_of(peer.node_id)
            if destination == own:
                logger.warning(
                    "%s and %s report the same pod subnet %s; no route installed",
                    node.node_id,
                    peer.node_id,
                    own,
                )
                continue
            routes.append(
                Route(
                    node_id=node.node_id,
                    destination=destination,
                    gateway=peer.private_ip or "",
                    target_node_id=peer.node_id,
                )
            )
    return routes


def compute_masquerade_rules(
    workers: Sequence[NodeRecord], nonmasquerade_cidr: str
) -> List[MasqueradeRule]:
    return [
        MasqueradeRule(node_id=w.node_id, exclude_destination=nonmasquerade_cidr)
        for w in workers
    ]


def parse_route_table(output: str) -> List[Tuple[str, Optional[str]]]:
    """(destination, gateway) pairs from 'ip -4 route show' output."""
    entries: List[Tuple[str, Optional[str]]] = []
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        gateway = fields[fields.index("via") + 1] if "via" in fields[:-1] else None
        entries.append((fields[0], gateway))
    return entries


def stale_routes(
    table: List[Tuple[str, Optional[str]]],
    desired: Sequence[Route],
    pod_cidr: str,
) -> List[str]:
    """Destinations of gateway routes inside the pod range not in `desired`."""
    pod_net = ipaddress.ip_network(pod_cidr)
    wanted: Set[Tuple[str, str]] = {(r.destination, r.gateway) for r in desired}
    stale: List[str] = []
    for destination, gateway in table:
        if gateway is None or (destination, gateway) in wanted:
            continue
        try:
            net = ipaddress.ip_network(destination, strict=False)
        except ValueError:
            continue
        if net.version == 4 and net.subnet_of(pod_net):  # type: ignore[arg-type]
            stale.append(destination)
    return stale


async def _ensure_masquerade(
    executor: NodeExecutor, node: NodeRecord, rule: MasqueradeRule
) -> None:
    check = ["sudo", "iptables", "-t", "nat", "-C"] + rule.rule_args()
    try:
        await executor.run(node, check, retries=1)
    except CommandError:
        logger.info(
            "%s: adding masquerade rule (except %s)",
            node.node_id,
            rule.exclude_destination,
        )
        append = ["sudo", "iptables", "-t", "nat", "-A"] + rule.rule_args()
        await executor.run(node, append)


async def _reconcile_node(
    executor: NodeExecutor,
    node: NodeRecord,
    routes: List[Route],
    rule: MasqueradeRule,
    subnet: Optional[str],
    pod_cidr: str,
    remove_stale: bool,
) -> Tuple[List[str], Optional[str]]:
    """
    Apply one worker's routing state.

    Returns:
        (removed stale routes, failure) where failure names the step that
        failed and its cause, or is None.
    """
    removed: List[str] = []
    step = "masquerade rule"
    try:
        await _ensure_masquerade(executor, node, rule)
        if subnet is None:
            return removed, None

        step = "bridge config"
        await apply_task(
            executor,
            node,
            UploadFile(path=CNI_BRIDGE_CONF, content=render_cni_bridge_config(subnet)),
            set(),
        )

        step = "route table"
        output = await executor.run(node, ["ip", "-4", "route", "show"])
        table = parse_route_table(output)
        present = set(table)
        for route in routes:
            if (route.destination, route.gateway) in present:
                continue
            step = f"route {route.destination} via {route.gateway}"
            logger.info("%s: %s (%s)", node.node_id, step, route.target_node_id)
            await executor.run(node, route.command())

        if remove_stale:
            for destination in stale_routes(table, routes, pod_cidr):
                step = f"remove route {destination}"
                logger.info("%s: removing stale route %s", node.node_id, destination)
                await executor.run(node, ["sudo", "ip", "route", "del", destination])
                removed.append(f"{node.node_id}: {destination}")
    except CommandError as exc:
        logger.error("%s: %s failed: %s", node.node_id, step, exc)
        return removed, f"{step}: {exc}"
    return removed, None


async def reconcile_network(
    workers: Sequence[NodeRecord],
    source: SubnetSource,
    executor: NodeExecutor,
    pod_cidr: str,
    nonmasquerade_cidr: str,
    timeout: float = 300.0,
    interval: float = 10.0,
    sleep: SleepFunc = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> ReconcileResult:
    """
    Run one full reconciliation pass from `awaiting-assignments`.

    A worker whose routing commands fail does not stop the others; the
    failure is recorded against that worker.

    Returns:
        ReconcileResult; its state is `routes-installed` only if every worker
        was assigned and reconciled. Call `raise_for_status()` to surface a
        timeout or per-worker failures.
    """
    workers = sorted(workers, key=lambda w: node_sort_key(w.node_id))
    assignment = await discover_pod_subnets(
        workers, source, timeout, interval, sleep=sleep, clock=clock
    )
    unresolved = assignment.unresolved([w.node_id for w in workers])
    routes = compute_routes(workers, assignment)
    rules = compute_masquerade_rules(workers, nonmasquerade_cidr)

    outcomes = await asyncio.gather(
        *(
            _reconcile_node(
                executor,
                worker,
                [r for r in routes if r.node_id == worker.node_id],
                rule,
                assignment.subnets.get(worker.node_id),
                pod_cidr,
                remove_stale=not unresolved,
            )
            for worker, rule in zip(workers, rules)
        )
    )
    failures = {
        worker.node_id: failure
        for worker, (_, failure) in zip(workers, outcomes)
        if failure is not None
    }

    result = ReconcileResult(
        state=(
            ReconcilerState.routes_installed
            if not unresolved and not failures
            else ReconcilerState.awaiting_assignments
        ),
        assignments=assignment,
        routes=routes,
        masquerade_rules=rules,
        removed_routes=[entry for removed, _ in outcomes for entry in removed],
        unresolved=unresolved,
        failures=failures,
        timeout=timeout,
    )
    logger.info(
        "Network reconciliation %s: %d route(s), %d masquerade rule(s), %d removed",
        result.state.value,
        len(result.routes),
        len(result.masquerade_rules),
        len(result.removed_routes),
    )
    return result
