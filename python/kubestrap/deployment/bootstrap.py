"""
kubestrap/deployment/bootstrap.py

The orchestrator. A bootstrap run holds the cluster's run lock and executes
the barrier steps in order, each one fully converging before the next:

  provision -> inventory -> pki -> install -> network

After every step the persisted ClusterState (records, bundle, run journal)
is saved, so an aborted or failed run leaves consistent state behind and is
resumed by simply running again: every step is idempotent.

Besides the full run this module offers the routes-only and smoke-only
entry points, both working from persisted state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, List, Optional

from kubestrap.deployment.installer import (
    ADMIN_KUBECONFIG,
    admin_kubeconfig,
    api_endpoint_for,
    build_installation_plan,
    rendered_units,
    run_installation,
)
from kubestrap.deployment.inventory import render_inventory, resolve_inventory
from kubestrap.deployment.network import (
    Clock,
    SubnetSource,
    kubectl_subnet_source,
    reconcile_network,
)
from kubestrap.deployment.pki import collect_subject_names, ensure_bundle
from kubestrap.deployment.probes import ProbeRunner
from kubestrap.deployment.providers import ResourceProvider
from kubestrap.deployment.provisioner import provision
from kubestrap.deployment.smoke import SmokeResult, run_smoke_test
from kubestrap.deployment.state import PRIVATE_MODE, StateStore
from kubestrap.deployment.tasks import NodeExecutor
from kubestrap.errors import ConfigurationError, KubestrapError
from kubestrap.models.install import RoleState
from kubestrap.models.inventory import InventoryGroup
from kubestrap.models.network import ReconcileResult, ReconcilerState
from kubestrap.models.settings import KubestrapSettings
from kubestrap.models.state import BarrierStep, BootstrapReport, ClusterState
from kubestrap.models.topology import ClusterTopology, NodeRole
from kubestrap.utils.async_retry import SleepFunc
from kubestrap.utils.lock import cluster_lock

logger = logging.getLogger(__name__)


def cluster_service_names(topology: ClusterTopology) -> List[str]:
    """In-cluster names and addresses the API server certificate must cover."""
    return [
        topology.kubernetes_service_ip(),
        "127.0.0.1",
        "kubernetes",
        "kubernetes.default",
        "kubernetes.default.svc",
        f"kubernetes.default.svc.{topology.cluster_domain}",
    ]


def store_for(settings: KubestrapSettings, cluster_name: str) -> StateStore:
    return StateStore(settings.cluster_dir(cluster_name), cluster_name)


async def _complete(
    store: StateStore,
    state: ClusterState,
    report: BootstrapReport,
    step: BarrierStep,
) -> None:
    state.journal.complete(step)
    report.completed.append(step)
    await store.save(state)
    logger.info("Cluster '%s': step %s complete", state.cluster_name, step.value)


def _network_source(
    executor: NodeExecutor, inventory: InventoryGroup
) -> SubnetSource:
    controllers = inventory.members(NodeRole.controller)
    if not controllers:
        raise ConfigurationError(["no ready controller to query pod subnets from"])
    return kubectl_subnet_source(executor, controllers[0], ADMIN_KUBECONFIG)


async def _reconcile(
    topology: ClusterTopology,
    settings: KubestrapSettings,
    inventory: InventoryGroup,
    executor: NodeExecutor,
    source: Optional[SubnetSource],
    sleep: SleepFunc,
    clock: Clock,
) -> ReconcileResult:
    return await reconcile_network(
        inventory.members(NodeRole.worker),
        source or _network_source(executor, inventory),
        executor,
        pod_cidr=topology.pod_cidr,
        nonmasquerade_cidr=topology.nonmasquerade_cidr,
        timeout=settings.subnet_poll_timeout,
        interval=settings.subnet_poll_interval,
        sleep=sleep,
        clock=clock,
    )


async def bootstrap_cluster(
    topology: ClusterTopology,
    settings: KubestrapSettings,
    provider: ResourceProvider,
    executor: NodeExecutor,
    decommission: Iterable[str] = (),
    control_plane_endpoint: Optional[str] = None,
    subnet_source: Optional[SubnetSource] = None,
    probe_runner: Optional[ProbeRunner] = None,
    sleep: SleepFunc = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> BootstrapReport:
    """
    Run every barrier step for `topology`.

    Args:
        topology: The validated cluster topology.
        settings: Run settings (state dir, retries, versions).
        provider: Provisioning interface.
        executor: Remote execution interface.
        decommission: Node ids whose instances may be destroyed.
        control_plane_endpoint: API address override; defaults to the load
            balancer, else the first controller.
        subnet_source: Pod-subnet source override (defaults to kubectl on the
            first controller).
        probe_runner: Readiness probe runner override.
        sleep / clock: Time functions, injectable for tests.

    Returns:
        BootstrapReport of a converged run.

    Raises:
        ClusterLockedError: If another run holds the cluster's lock.
        KubestrapError: The first fatal failure; progress up to that point is
            saved in the cluster's state and run journal.
    """
    name = topology.cluster_name
    async with cluster_lock(settings.state_dir, name):
        store = store_for(settings, name)
        state = await store.load()
        if state.journal.interrupted:
            last = state.journal.last_completed
            logger.warning(
                "Cluster '%s': previous run was interrupted after %s; resuming",
                name,
                last.value if last else "no completed step",
            )
        state.journal.begin()
        await store.save(state)
        report = BootstrapReport(cluster_name=name)

        try:
            await _run_steps(
                topology,
                settings,
                provider,
                executor,
                store,
                state,
                report,
                decommission,
                control_plane_endpoint,
                subnet_source,
                probe_runner,
                sleep,
                clock,
            )
        except KubestrapError as exc:
            state.journal.error = str(exc)
            await store.save(state)
            logger.error("Cluster '%s': run failed: %s", name, exc)
            raise

        logger.info("Cluster '%s': bootstrap converged", name)
        return report


async def _run_steps(
    topology: ClusterTopology,
    settings: KubestrapSettings,
    provider: ResourceProvider,
    executor: NodeExecutor,
    store: StateStore,
    state: ClusterState,
    report: BootstrapReport,
    decommission: Iterable[str],
    control_plane_endpoint: Optional[str],
    subnet_source: Optional[SubnetSource],
    probe_runner: Optional[ProbeRunner],
    sleep: SleepFunc,
    clock: Clock,
) -> None:
    name = topology.cluster_name

    # 1) provision
    logger.info("Cluster '%s': provisioning resources", name)
    result = await provision(
        topology,
        provider,
        previous_records=state.records,
        decommission=decommission,
        retries=settings.provider_retries,
        retry_delay=settings.provider_retry_delay,
        sleep=sleep,
    )
    state.records = result.records
    state.load_balancer = result.load_balancer
    report.provision = result
    await store.save(state)
    result.raise_for_status()
    await _complete(store, state, report, BarrierStep.provision)

    # 2) inventory
    inventory = resolve_inventory(result.records)
    report.inventory = inventory
    await store.write_files(render_inventory(inventory))
    await _complete(store, state, report, BarrierStep.inventory)

    # 3) pki
    lb_names = result.load_balancer.endpoint_names if result.load_balancer else []
    endpoint = control_plane_endpoint or api_endpoint_for(inventory, lb_names)
    extra = cluster_service_names(topology)
    if control_plane_endpoint:
        extra.append(control_plane_endpoint)
    names = collect_subject_names(
        result.records, result.load_balancer, topology.dns_name, extra
    )
    bundle, changed = ensure_bundle(names, state.bundle)
    state.bundle = bundle
    state.api_endpoint = endpoint
    report.certificate_changed = changed
    report.api_endpoint = endpoint
    await store.write_bundle(bundle)
    await _complete(store, state, report, BarrierStep.pki)

    # 4) install
    logger.info("Cluster '%s': installing services (api %s)", name, endpoint)
    plan = build_installation_plan(topology, inventory, bundle, settings, endpoint)
    await store.write_files(rendered_units(plan))
    install_report = await run_installation(
        plan,
        inventory,
        executor,
        policy=settings.probe_policy(),
        sleep=sleep,
        runner=probe_runner,
        ca_pem=bundle.ca_cert_pem,
    )
    report.install = install_report
    state.journal.role_states = {
        role: role_report.state for role, role_report in install_report.roles.items()
    }
    await store.save(state)
    install_report.raise_for_status()
    await store.write_file(
        "admin.kubeconfig",
        admin_kubeconfig(topology, bundle, endpoint),
        mode=PRIVATE_MODE,
    )
    await _complete(store, state, report, BarrierStep.install)

    # 5) network
    logger.info("Cluster '%s': reconciling pod network", name)
    network = await _reconcile(
        topology, settings, inventory, executor, subnet_source, sleep, clock
    )
    report.network = network
    state.pod_subnets = dict(network.assignments.subnets)
    await store.save(state)
    network.raise_for_status()
    await _complete(store, state, report, BarrierStep.network)


def _installed_inventory(store: StateStore, state: ClusterState) -> InventoryGroup:
    if state.journal.role_states.get(NodeRole.worker) is not RoleState.verified:
        raise ConfigurationError(
            [
                f"cluster '{store.cluster_name}' has no verified workers; "
                "run a full bootstrap first"
            ]
        )
    return resolve_inventory(state.records)


async def reconcile_network_only(
    topology: ClusterTopology,
    settings: KubestrapSettings,
    executor: NodeExecutor,
    subnet_source: Optional[SubnetSource] = None,
    sleep: SleepFunc = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> ReconcileResult:
    """
    Re-run the Network Reconciler from `awaiting-assignments` against the
    persisted node records (e.g. after a worker was replaced).

    Raises:
        ConfigurationError: If the cluster was never installed.
        ReconciliationTimeout: If some workers still have no pod subnet.
        RoutingError: If routing state could not be applied on some workers.
    """
    name = topology.cluster_name
    async with cluster_lock(settings.state_dir, name):
        store = store_for(settings, name)
        state = await store.load()
        inventory = _installed_inventory(store, state)
        network = await _reconcile(
            topology, settings, inventory, executor, subnet_source, sleep, clock
        )
        state.pod_subnets = dict(network.assignments.subnets)
        if network.state is ReconcilerState.routes_installed:
            state.journal.complete(BarrierStep.network)
        await store.save(state)
        network.raise_for_status()
        return network


async def smoke_test_cluster(
    topology: ClusterTopology,
    settings: KubestrapSettings,
    executor: NodeExecutor,
    image: str = "nginx",
    timeout: float = 120.0,
) -> SmokeResult:
    """Run the smoke deployment on a bootstrapped cluster.

    Raises:
        ConfigurationError: If the cluster was never installed.
        SmokeTestError: If the deployment never became available.
    """
    name = topology.cluster_name
    async with cluster_lock(settings.state_dir, name):
        store = store_for(settings, name)
        state = await store.load()
        inventory = _installed_inventory(store, state)
        controllers = inventory.members(NodeRole.controller)
        if not controllers:
            raise ConfigurationError([f"cluster '{name}' has no ready controller"])
        result = await run_smoke_test(
            executor, controllers[0], image=image, timeout=timeout
        )
    result.raise_for_status()
    return result
