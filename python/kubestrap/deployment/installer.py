"""
kubestrap/deployment/installer.py

The Service Installer.

build_installation_plan renders the per-node task lists and readiness probes
for the three roles (etcd -> controller -> worker) from explicit render
contexts. run_installation executes a plan against the inventory:

  - roles run strictly in plan order; a role starts only once every role it
    depends on is `verified`, otherwise it stays `not-started` and is
    reported as blocked
  - within a role, member nodes run their task lists concurrently
  - a role enters `installing` only when some task actually has to change a
    node; if every task already matches it goes straight to `started`
  - `started -> verified` requires every readiness probe to pass within the
    bounded retry policy; otherwise the role is `failed`
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from kubestrap.deployment.probes import (
    ProbeFailure,
    ProbeRunner,
    probe_runner,
    wait_ready,
)
from kubestrap.deployment.tasks import NodeExecutor, apply_task, host_preparation_tasks
from kubestrap.deployment.units import (
    CNI_BIN_DIR,
    CNI_CONF_DIR,
    ETCD_DIR,
    KUBE_PROXY_DIR,
    KUBELET_DIR,
    KUBERNETES_DIR,
    ApiServerContext,
    CertPaths,
    ControllerManagerContext,
    EtcdContext,
    KubeletContext,
    KubeProxyContext,
    SchedulerContext,
    render_apiserver_unit,
    render_cni_loopback_config,
    render_containerd_config,
    render_containerd_unit,
    render_controller_manager_unit,
    render_etcd_unit,
    render_kube_proxy_config,
    render_kube_proxy_unit,
    render_kubeconfig,
    render_kubelet_config,
    render_kubelet_unit,
    render_scheduler_unit,
)
from kubestrap.models.install import (
    CommandTask,
    EnableService,
    FetchBinary,
    InstallationPlan,
    InstallReport,
    ProbePolicy,
    ProbeSpec,
    RolePlan,
    RoleReport,
    RoleState,
    ServiceUnit,
    TaskSpec,
    UploadFile,
)
from kubestrap.models.inventory import InventoryGroup
from kubestrap.models.node import NodeRecord
from kubestrap.models.pki import CertificateBundle
from kubestrap.models.settings import KubestrapSettings
from kubestrap.models.topology import ClusterTopology, NodeRole
from kubestrap.utils.async_retry import SleepFunc

logger = logging.getLogger(__name__)

ADMIN_KUBECONFIG = f"{KUBERNETES_DIR}/admin.kubeconfig"
LOCAL_API = "https://127.0.0.1:6443"

K8S_RELEASE_URL = "https://dl.k8s.io/release/v{version}/bin/linux/amd64/{name}"
ETCD_RELEASE_URL = (
    "https://github.com/etcd-io/etcd/releases/download/"
    "v{version}/etcd-v{version}-linux-amd64.tar.gz"
)
CONTAINERD_RELEASE_URL = (
    "https://github.com/containerd/containerd/releases/download/"
    "v{version}/containerd-{version}-linux-amd64.tar.gz"
)
RUNC_RELEASE_URL = (
    "https://github.com/opencontainers/runc/releases/download/v{version}/runc.amd64"
)
CNI_PLUGINS_RELEASE_URL = (
    "https://github.com/containernetworking/plugins/releases/download/"
    "v{version}/cni-plugins-linux-amd64-v{version}.tgz"
)


# ----------------------------------------------------------------------
# 1) Plan construction
# ----------------------------------------------------------------------


def _k8s_binary(name: str, version: str) -> FetchBinary:
    return FetchBinary(
        name=name, url=K8S_RELEASE_URL.format(version=version, name=name)
    )


def _cert_uploads(bundle: CertificateBundle, certs: CertPaths) -> List[TaskSpec]:
    return [
        UploadFile(path=certs.ca, content=bundle.ca_cert_pem),
        UploadFile(path=certs.cert, content=bundle.server_cert_pem),
        UploadFile(
            path=certs.key, content=bundle.server_key_pem, mode="0600", sensitive=True
        ),
    ]


def _service(unit: ServiceUnit, watches: List[str]) -> List[TaskSpec]:
    enable = EnableService(unit_name=unit.unit_name, watches=[unit.path] + watches)
    return [unit, enable]


def _etcd_step(
    inventory: InventoryGroup, bundle: CertificateBundle, settings: KubestrapSettings
) -> RolePlan:
    members = inventory.members(NodeRole.etcd)
    peers = [(rec.node_id, rec.private_ip or "") for rec in members]
    certs = CertPaths.under(ETCD_DIR)
    version = settings.etcd_version
    archive_dir = f"etcd-v{version}-linux-amd64"
    fetch = FetchBinary(
        name="etcd",
        url=ETCD_RELEASE_URL.format(version=version),
        archive_members=[f"{archive_dir}/etcd", f"{archive_dir}/etcdctl"],
    )

    tasks: Dict[str, List[TaskSpec]] = {}
    for rec in members:
        ctx = EtcdContext(name=rec.node_id, address=rec.private_ip or "", peers=peers)
        unit = ServiceUnit(unit_name="etcd", content=render_etcd_unit(ctx))
        tasks[rec.node_id] = (
            host_preparation_tasks(NodeRole.etcd)
            + _cert_uploads(bundle, certs)
            + [fetch]
            + _service(unit, [certs.ca, certs.cert, certs.key, "/usr/local/bin/etcd"])
        )

    health = [
        "sudo",
        "ETCDCTL_API=3",
        "etcdctl",
        "endpoint",
        "health",
        "--cluster",
        "--endpoints=https://127.0.0.1:2379",
        f"--cacert={certs.ca}",
        f"--cert={certs.cert}",
        f"--key={certs.key}",
    ]
    return RolePlan(
        role=NodeRole.etcd,
        tasks=tasks,
        probes=[
            ProbeSpec(
                name="etcd active",
                kind="command",
                command=["systemctl", "is-active", "etcd"],
                expect="active",
            ),
            ProbeSpec(
                name="etcd quorum",
                kind="command",
                scope="first",
                command=health,
                expect="is healthy",
                expect_count=len(members),
            ),
        ],
    )


def _controller_step(
    topology: ClusterTopology,
    inventory: InventoryGroup,
    bundle: CertificateBundle,
    settings: KubestrapSettings,
    api_endpoint: str,
) -> RolePlan:
    members = inventory.members(NodeRole.controller)
    certs = CertPaths.under(KUBERNETES_DIR)
    version = settings.kubernetes_version
    cluster = topology.cluster_name

    def kubeconfig(path: str, user: str) -> UploadFile:
        return UploadFile(
            path=path,
            content=render_kubeconfig(
                cluster, LOCAL_API, bundle.ca_cert_pem, user, bundle.token_for(user)
            ),
            mode="0600",
            sensitive=True,
        )

    cm_ctx = ControllerManagerContext(
        cluster_name=cluster,
        pod_cidr=topology.pod_cidr,
        service_cidr=topology.service_cidr,
    )
    sched_ctx = SchedulerContext()
    shared: List[TaskSpec] = (
        _cert_uploads(bundle, certs)
        + [
            UploadFile(
                path=f"{KUBERNETES_DIR}/token.csv",
                content=bundle.token_csv(),
                mode="0600",
                sensitive=True,
            ),
            kubeconfig(cm_ctx.kubeconfig, "system:kube-controller-manager"),
            kubeconfig(sched_ctx.kubeconfig, "system:kube-scheduler"),
            kubeconfig(ADMIN_KUBECONFIG, "admin"),
        ]
        + [
            _k8s_binary(name, version)
            for name in (
                "kube-apiserver",
                "kube-controller-manager",
                "kube-scheduler",
                "kubectl",
            )
        ]
    )
    cert_watch = [certs.ca, certs.cert, certs.key]

    tasks: Dict[str, List[TaskSpec]] = {}
    for rec in members:
        api_ctx = ApiServerContext(
            address=rec.private_ip or "",
            controller_count=len(members),
            etcd_addresses=inventory.addresses(NodeRole.etcd),
            service_cidr=topology.service_cidr,
            external_endpoint=api_endpoint,
        )
        tasks[rec.node_id] = (
            host_preparation_tasks(NodeRole.controller)
            + shared
            + _service(
                ServiceUnit(
                    unit_name="kube-apiserver", content=render_apiserver_unit(api_ctx)
                ),
                cert_watch
                + [api_ctx.token_file, "/usr/local/bin/kube-apiserver"],
            )
            + _service(
                ServiceUnit(
                    unit_name="kube-controller-manager",
                    content=render_controller_manager_unit(cm_ctx),
                ),
                cert_watch
                + [cm_ctx.kubeconfig, "/usr/local/bin/kube-controller-manager"],
            )
            + _service(
                ServiceUnit(
                    unit_name="kube-scheduler", content=render_scheduler_unit(sched_ctx)
                ),
                [sched_ctx.kubeconfig, "/usr/local/bin/kube-scheduler"],
            )
        )

    return RolePlan(
        role=NodeRole.controller,
        depends_on=[NodeRole.etcd],
        tasks=tasks,
        probes=[
            ProbeSpec(name="api port", kind="tcp", port=6443),
            ProbeSpec(
                name="api healthz",
                kind="http",
                scope="first",
                port=6443,
                path="/healthz",
            ),
            ProbeSpec(
                name="api readyz",
                kind="command",
                scope="first",
                command=[
                    "sudo",
                    "kubectl",
                    f"--kubeconfig={ADMIN_KUBECONFIG}",
                    "get",
                    "--raw=/readyz",
                ],
                expect="ok",
            ),
        ],
    )


def _worker_step(
    topology: ClusterTopology,
    inventory: InventoryGroup,
    bundle: CertificateBundle,
    settings: KubestrapSettings,
    api_endpoint: str,
) -> RolePlan:
    members = inventory.members(NodeRole.worker)
    controllers = inventory.members(NodeRole.controller)
    certs = CertPaths.under(KUBERNETES_DIR)
    version = settings.kubernetes_version
    server = f"https://{api_endpoint}:6443"
    cluster = topology.cluster_name

    proxy_ctx = KubeProxyContext(pod_cidr=topology.pod_cidr)
    binaries: List[TaskSpec] = [
        _k8s_binary(name, version) for name in ("kubelet", "kube-proxy", "kubectl")
    ] + [
        FetchBinary(
            name="containerd",
            url=CONTAINERD_RELEASE_URL.format(version=settings.containerd_version),
            archive_members=[
                "bin/containerd",
                "bin/containerd-shim-runc-v2",
                "bin/ctr",
            ],
        ),
        FetchBinary(
            name="runc", url=RUNC_RELEASE_URL.format(version=settings.runc_version)
        ),
        FetchBinary(
            name="cni-plugins",
            url=CNI_PLUGINS_RELEASE_URL.format(version=settings.cni_plugins_version),
            dest_dir=CNI_BIN_DIR,
            archive_members=["./bridge", "./host-local", "./loopback"],
        ),
    ]
    shared: List[TaskSpec] = binaries + [
        UploadFile(path=certs.ca, content=bundle.ca_cert_pem),
        UploadFile(
            path="/etc/containerd/config.toml", content=render_containerd_config()
        ),
        UploadFile(
            path=f"{CNI_CONF_DIR}/99-loopback.conf",
            content=render_cni_loopback_config(),
        ),
        UploadFile(
            path=proxy_ctx.kubeconfig,
            content=render_kubeconfig(
                cluster,
                server,
                bundle.ca_cert_pem,
                "system:kube-proxy",
                bundle.token_for("system:kube-proxy"),
            ),
            mode="0600",
            sensitive=True,
        ),
        UploadFile(
            path=proxy_ctx.config_path, content=render_kube_proxy_config(proxy_ctx)
        ),
    ]

    tasks: Dict[str, List[TaskSpec]] = {}
    for rec in members:
        kubelet_ctx = KubeletContext(
            node_name=rec.node_id,
            address=rec.private_ip or "",
            cluster_dns=topology.cluster_dns_ip(),
            cluster_domain=topology.cluster_domain,
        )
        tasks[rec.node_id] = (
            host_preparation_tasks(NodeRole.worker)
            + shared
            + [
                UploadFile(
                    path=kubelet_ctx.kubeconfig,
                    content=render_kubeconfig(
                        cluster,
                        server,
                        bundle.ca_cert_pem,
                        "kubelet",
                        bundle.token_for("kubelet"),
                    ),
                    mode="0600",
                    sensitive=True,
                ),
                UploadFile(
                    path=kubelet_ctx.config_path,
                    content=render_kubelet_config(kubelet_ctx),
                ),
            ]
            + _service(
                ServiceUnit(unit_name="containerd", content=render_containerd_unit()),
                ["/etc/containerd/config.toml", "/usr/local/bin/containerd"],
            )
            + _service(
                ServiceUnit(
                    unit_name="kubelet", content=render_kubelet_unit(kubelet_ctx)
                ),
                [
                    certs.ca,
                    kubelet_ctx.kubeconfig,
                    kubelet_ctx.config_path,
                    "/usr/local/bin/kubelet",
                ],
            )
            + _service(
                ServiceUnit(
                    unit_name="kube-proxy", content=render_kube_proxy_unit(proxy_ctx)
                ),
                [
                    proxy_ctx.kubeconfig,
                    proxy_ctx.config_path,
                    "/usr/local/bin/kube-proxy",
                ],
            )
        )

    # kubelets authenticate as group system:nodes; bind it once on a controller
    if controllers:
        binding = "kubestrap-kubelets"
        kubectl = ["sudo", "kubectl", f"--kubeconfig={ADMIN_KUBECONFIG}"]
        tasks.setdefault(controllers[0].node_id, []).append(
            CommandTask(
                name="bind kubelet group",
                check=kubectl + ["get", "clusterrolebinding", binding],
                apply=kubectl
                + [
                    "create",
                    "clusterrolebinding",
                    binding,
                    "--clusterrole=system:node",
                    "--group=system:nodes",
                ],
            )
        )

    return RolePlan(
        role=NodeRole.worker,
        depends_on=[NodeRole.controller],
        tasks=tasks,
        probes=[
            ProbeSpec(
                name="worker services",
                kind="command",
                command=[
                    "systemctl",
                    "is-active",
                    "containerd",
                    "kubelet",
                    "kube-proxy",
                ],
                expect="active",
                expect_count=3,
            ),
            ProbeSpec(
                name="workers registered",
                kind="command",
                run_on=NodeRole.controller,
                command=[
                    "sudo",
                    "kubectl",
                    f"--kubeconfig={ADMIN_KUBECONFIG}",
                    "get",
                    "nodes",
                    "-o",
                    "name",
                ],
                expect="node/worker-",
                expect_count=len(members),
            ),
        ],
    )


def api_endpoint_for(
    inventory: InventoryGroup, load_balancer_names: List[str]
) -> str:
    """Address clients use for the API: the load balancer, else the first controller."""
    if load_balancer_names:
        return load_balancer_names[0]
    addresses = inventory.addresses(NodeRole.controller)
    if not addresses:
        raise ValueError("No controller address available for the API endpoint.")
    return addresses[0]


def build_installation_plan(
    topology: ClusterTopology,
    inventory: InventoryGroup,
    bundle: CertificateBundle,
    settings: KubestrapSettings,
    api_endpoint: str,
) -> InstallationPlan:
    """Render task lists and probes for etcd, controller and worker roles."""
    return InstallationPlan(
        roles=[
            _etcd_step(inventory, bundle, settings),
            _controller_step(topology, inventory, bundle, settings, api_endpoint),
            _worker_step(topology, inventory, bundle, settings, api_endpoint),
        ]
    )


def rendered_units(plan: InstallationPlan) -> Dict[str, str]:
    """Unit definitions of a plan as 'units/<node>/<unit>.service' -> content."""
    files: Dict[str, str] = {}
    for step in plan.roles:
        for nid, tasks in step.tasks.items():
            for task in tasks:
                if isinstance(task, ServiceUnit):
                    files[f"units/{nid}/{task.unit_name}.service"] = task.content
    return files


def admin_kubeconfig(
    topology: ClusterTopology, bundle: CertificateBundle, api_endpoint: str
) -> str:
    """Kubeconfig for the operator, pointing at the external API endpoint."""
    return render_kubeconfig(
        topology.cluster_name,
        f"https://{api_endpoint}:6443",
        bundle.ca_cert_pem,
        "admin",
        bundle.token_for("admin"),
    )


# ----------------------------------------------------------------------
# 2) Execution
# ----------------------------------------------------------------------


class _NodeFailure(Exception):
    def __init__(self, node_id: str, step: str, cause: str) -> None:
        super().__init__(f"{node_id}: {step}: {cause}")
        self.node_id = node_id
        self.step = step
        self.cause = cause


async def _run_node_tasks(
    executor: NodeExecutor,
    node: NodeRecord,
    tasks: List[TaskSpec],
    report: RoleReport,
) -> None:
    changed_paths: Set[str] = set()

    def _enter_installing() -> None:
        if report.state is RoleState.not_started:
            logger.info("Role %s: installing", report.role.value)
            report.transition(RoleState.installing)

    for task in tasks:
        try:
            changed = await apply_task(
                executor, node, task, changed_paths, before_apply=_enter_installing
            )
        except Exception as exc:
            raise _NodeFailure(node.node_id, task.label, str(exc) or repr(exc)) from exc
        if changed:
            report.changed_tasks.append(f"{node.node_id}: {task.label}")


def _fail(report: RoleReport, step: str, cause: str, node_id: Optional[str]) -> None:
    if report.state is RoleState.not_started:
        report.transition(RoleState.installing)
    report.transition(RoleState.failed)
    report.failed_step = step
    report.failed_node = node_id
    report.error = cause
    logger.error(
        "Role %s failed at %s%s: %s",
        report.role.value,
        step,
        f" on {node_id}" if node_id else "",
        cause,
    )


async def _install_role(
    step: RolePlan,
    inventory: InventoryGroup,
    executor: NodeExecutor,
    runner: ProbeRunner,
    policy: ProbePolicy,
    sleep: SleepFunc,
    report: RoleReport,
) -> None:
    members = inventory.members(step.role)
    if not members:
        _fail(report, "inventory", f"no ready {step.role.value} nodes", None)
        return

    targets: List[Tuple[NodeRecord, List[TaskSpec]]] = []
    for nid, tasks in step.tasks.items():
        try:
            targets.append((inventory.find(nid), tasks))
        except KeyError as exc:
            _fail(report, "inventory", str(exc), nid)
            return

    results = await asyncio.gather(
        *(_run_node_tasks(executor, node, tasks, report) for node, tasks in targets),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, _NodeFailure):
            _fail(report, result.step, result.cause, result.node_id)
            return
        if isinstance(result, BaseException):
            raise result

    report.transition(RoleState.started)
    logger.info(
        "Role %s: started (%d task(s) changed)",
        step.role.value,
        len(report.changed_tasks),
    )

    for probe in step.probes:
        try:
            report.probe_attempts += await wait_ready(
                probe, members, runner, policy, sleep
            )
        except ProbeFailure as exc:
            report.probe_attempts += exc.attempts
            _fail(report, f"probe {probe.name}", str(exc), None)
            return

    report.transition(RoleState.verified)
    logger.info("Role %s: verified", step.role.value)


async def run_installation(
    plan: InstallationPlan,
    inventory: InventoryGroup,
    executor: NodeExecutor,
    policy: Optional[ProbePolicy] = None,
    sleep: SleepFunc = asyncio.sleep,
    runner: Optional[ProbeRunner] = None,
    ca_pem: Optional[str] = None,
) -> InstallReport:
    """
    Execute the plan role by role and report each role's final state.

    Failures are reported, not raised: a failed role leaves its dependents
    `not-started` with `blocked_by` set. Call `raise_for_status()` on the
    report to surface the first failure.
    """
    policy = policy or ProbePolicy()
    runner = runner or probe_runner(executor, inventory, ca_pem)
    report = InstallReport()

    for step in plan.roles:
        role_report = RoleReport(role=step.role)
        report.roles[step.role] = role_report

        blocked = [
            dep
            for dep in step.depends_on
            if report.roles[dep].state is not RoleState.verified
        ]
        if blocked:
            role_report.blocked_by = blocked
            role_report.error = "waiting for " + ", ".join(d.value for d in blocked)
            logger.warning(
                "Role %s not started: %s", step.role.value, role_report.error
            )
            continue

        await _install_role(
            step, inventory, executor, runner, policy, sleep, role_report
        )

    return report
