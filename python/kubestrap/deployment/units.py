"""
kubestrap/deployment/units.py

Renders systemd units, component configuration and kubeconfig files from
explicit render contexts. Everything a template needs (own address, peer
list, endpoints, certificate paths) is a field of its context; nothing is
looked up from the node or the environment at render time.

Rendered units embed the peer list known when they were rendered. A unit
that is already running is not re-rendered when its peer group changes
later; re-running the installer with the new inventory is what updates it.
"""

from __future__ import annotations

import base64
import json
import textwrap
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

# Certificate and credential locations on the nodes.
KUBERNETES_DIR = "/var/lib/kubernetes"
ETCD_DIR = "/etc/etcd"
KUBELET_DIR = "/var/lib/kubelet"
KUBE_PROXY_DIR = "/var/lib/kube-proxy"
CNI_CONF_DIR = "/etc/cni/net.d"
CNI_BIN_DIR = "/opt/cni/bin"
CONTAINERD_SOCKET = "unix:///var/run/containerd/containerd.sock"


class CertPaths(BaseModel):
    """Where the shared certificate material lives on a node."""

    ca: str
    cert: str
    key: str

    @classmethod
    def under(cls, directory: str) -> CertPaths:
        return cls(
            ca=f"{directory}/ca.pem",
            cert=f"{directory}/kubernetes.pem",
            key=f"{directory}/kubernetes-key.pem",
        )


class EtcdContext(BaseModel):
    """Render context of one etcd member.

    Attributes:
        name: Member name (the node id).
        address: The member's own private address.
        peers: (name, address) of every member, in stable order.
    """

    name: str
    address: str
    peers: List[Tuple[str, str]]
    certs: CertPaths = Field(default_factory=lambda: CertPaths.under(ETCD_DIR))
    data_dir: str = "/var/lib/etcd"
    cluster_token: str = "etcd-cluster-0"

    @property
    def initial_cluster(self) -> str:
        return ",".join(f"{name}=https://{addr}:2380" for name, addr in self.peers)


class ApiServerContext(BaseModel):
    address: str
    controller_count: int
    etcd_addresses: List[str]
    service_cidr: str
    external_endpoint: str
    certs: CertPaths = Field(default_factory=lambda: CertPaths.under(KUBERNETES_DIR))
    token_file: str = f"{KUBERNETES_DIR}/token.csv"

    @property
    def etcd_servers(self) -> str:
        return ",".join(f"https://{addr}:2379" for addr in self.etcd_addresses)


class ControllerManagerContext(BaseModel):
    cluster_name: str
    pod_cidr: str
    service_cidr: str
    node_cidr_mask_size: int = 24
    certs: CertPaths = Field(default_factory=lambda: CertPaths.under(KUBERNETES_DIR))
    kubeconfig: str = f"{KUBERNETES_DIR}/kube-controller-manager.kubeconfig"


class SchedulerContext(BaseModel):
    kubeconfig: str = f"{KUBERNETES_DIR}/kube-scheduler.kubeconfig"


class KubeletContext(BaseModel):
    node_name: str
    address: str
    cluster_dns: str
    cluster_domain: str
    certs: CertPaths = Field(default_factory=lambda: CertPaths.under(KUBERNETES_DIR))
    kubeconfig: str = f"{KUBELET_DIR}/kubeconfig"
    config_path: str = f"{KUBELET_DIR}/kubelet-config.yaml"


class KubeProxyContext(BaseModel):
    pod_cidr: str
    kubeconfig: str = f"{KUBE_PROXY_DIR}/kubeconfig"
    config_path: str = f"{KUBE_PROXY_DIR}/kube-proxy-config.yaml"


# ----------------------------------------------------------------------
# Unit rendering
# ----------------------------------------------------------------------


def _unit(
    description: str,
    exec_start: str,
    flags: List[str],
    after: Optional[List[str]] = None,
    requires: Optional[List[str]] = None,
    extra_service: Optional[List[str]] = None,
) -> str:
    """Assemble a systemd service unit with one ExecStart flag per line."""
    unit = ["[Unit]", f"Description={description}"]
    if after:
        unit.append("After=" + " ".join(after))
    if requires:
        unit.append("Requires=" + " ".join(requires))

    command = " \\\n  ".join([exec_start] + flags)
    service = (extra_service or []) + [
        f"ExecStart={command}",
        "Restart=on-failure",
        "RestartSec=5",
    ]
    return "\n".join(
        unit
        + [""]
        + ["[Service]"]
        + service
        + ["", "[Install]", "WantedBy=multi-user.target", ""]
    )


def render_etcd_unit(ctx: EtcdContext) -> str:
    return _unit(
        "etcd",
        "/usr/local/bin/etcd",
        [
            f"--name {ctx.name}",
            f"--cert-file={ctx.certs.cert}",
            f"--key-file={ctx.certs.key}",
            f"--peer-cert-file={ctx.certs.cert}",
            f"--peer-key-file={ctx.certs.key}",
            f"--trusted-ca-file={ctx.certs.ca}",
            f"--peer-trusted-ca-file={ctx.certs.ca}",
            "--peer-client-cert-auth",
            "--client-cert-auth",
            f"--initial-advertise-peer-urls https://{ctx.address}:2380",
            f"--listen-peer-urls https://{ctx.address}:2380",
            f"--listen-client-urls https://{ctx.address}:2379,https://127.0.0.1:2379",
            f"--advertise-client-urls https://{ctx.address}:2379",
            f"--initial-cluster-token {ctx.cluster_token}",
            f"--initial-cluster {ctx.initial_cluster}",
            "--initial-cluster-state new",
            f"--data-dir={ctx.data_dir}",
        ],
        extra_service=["Type=notify"],
    )


def render_apiserver_unit(ctx: ApiServerContext) -> str:
    return _unit(
        "Kubernetes API Server",
        "/usr/local/bin/kube-apiserver",
        [
            f"--advertise-address={ctx.address}",
            "--allow-privileged=true",
            f"--apiserver-count={ctx.controller_count}",
            "--authorization-mode=RBAC",
            "--bind-address=0.0.0.0",
            f"--client-ca-file={ctx.certs.ca}",
            "--enable-admission-plugins=NamespaceLifecycle,LimitRanger,"
            "ServiceAccount,DefaultStorageClass,ResourceQuota",
            f"--etcd-cafile={ctx.certs.ca}",
            f"--etcd-certfile={ctx.certs.cert}",
            f"--etcd-keyfile={ctx.certs.key}",
            f"--etcd-servers={ctx.etcd_servers}",
            f"--service-account-key-file={ctx.certs.key}",
            f"--service-account-signing-key-file={ctx.certs.key}",
            f"--service-account-issuer=https://{ctx.external_endpoint}:6443",
            f"--service-cluster-ip-range={ctx.service_cidr}",
            "--service-node-port-range=30000-32767",
            f"--tls-cert-file={ctx.certs.cert}",
            f"--tls-private-key-file={ctx.certs.key}",
            f"--token-auth-file={ctx.token_file}",
            "--v=2",
        ],
    )


def render_controller_manager_unit(ctx: ControllerManagerContext) -> str:
    return _unit(
        "Kubernetes Controller Manager",
        "/usr/local/bin/kube-controller-manager",
        [
            "--bind-address=0.0.0.0",
            "--allocate-node-cidrs=true",
            f"--cluster-cidr={ctx.pod_cidr}",
            f"--node-cidr-mask-size={ctx.node_cidr_mask_size}",
            f"--cluster-name={ctx.cluster_name}",
            f"--cluster-signing-cert-file={ctx.certs.ca}",
            f"--kubeconfig={ctx.kubeconfig}",
            "--leader-elect=true",
            f"--root-ca-file={ctx.certs.ca}",
            f"--service-account-private-key-file={ctx.certs.key}",
            f"--service-cluster-ip-range={ctx.service_cidr}",
            "--use-service-account-credentials=true",
            "--v=2",
        ],
    )


def render_scheduler_unit(ctx: SchedulerContext) -> str:
    return _unit(
        "Kubernetes Scheduler",
        "/usr/local/bin/kube-scheduler",
        [f"--kubeconfig={ctx.kubeconfig}", "--leader-elect=true", "--v=2"],
    )


def render_containerd_unit() -> str:
    return _unit(
        "containerd container runtime",
        "/usr/local/bin/containerd",
        [],
        after=["network.target"],
        extra_service=[
            "ExecStartPre=/sbin/modprobe overlay",
            "Delegate=yes",
            "KillMode=process",
            "LimitNOFILE=1048576",
        ],
    )


def render_kubelet_unit(ctx: KubeletContext) -> str:
    return _unit(
        "Kubernetes Kubelet",
        "/usr/local/bin/kubelet",
        [
            f"--config={ctx.config_path}",
            f"--kubeconfig={ctx.kubeconfig}",
            f"--container-runtime-endpoint={CONTAINERD_SOCKET}",
            f"--node-ip={ctx.address}",
            f"--hostname-override={ctx.node_name}",
            "--register-node=true",
            "--v=2",
        ],
        after=["containerd.service"],
        requires=["containerd.service"],
    )


def render_kube_proxy_unit(ctx: KubeProxyContext) -> str:
    return _unit(
        "Kubernetes Kube Proxy",
        "/usr/local/bin/kube-proxy",
        [f"--config={ctx.config_path}"],
    )


# ----------------------------------------------------------------------
# Component configuration
# ----------------------------------------------------------------------


def render_kubelet_config(ctx: KubeletContext) -> str:
    config = {
        "kind": "KubeletConfiguration",
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"enabled": False},
            "x509": {"clientCAFile": ctx.certs.ca},
        },
        "authorization": {"mode": "AlwaysAllow"},
        "cgroupDriver": "systemd",
        "clusterDomain": ctx.cluster_domain,
        "clusterDNS": [ctx.cluster_dns],
        "resolvConf": "/run/systemd/resolve/resolv.conf",
        "runtimeRequestTimeout": "15m",
    }
    return yaml.safe_dump(config, sort_keys=False)


def render_kube_proxy_config(ctx: KubeProxyContext) -> str:
    config = {
        "kind": "KubeProxyConfiguration",
        "apiVersion": "kubeproxy.config.k8s.io/v1alpha1",
        "clientConnection": {"kubeconfig": ctx.kubeconfig},
        "mode": "iptables",
        "clusterCIDR": ctx.pod_cidr,
    }
    return yaml.safe_dump(config, sort_keys=False)


def render_sysctl_config() -> str:
    return textwrap.dedent(
        """\
        net.bridge.bridge-nf-call-iptables  = 1
        net.bridge.bridge-nf-call-ip6tables = 1
        net.ipv4.ip_forward                 = 1
        """
    )


def render_containerd_config() -> str:
    return textwrap.dedent(
        """\
        version = 2

        [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
          runtime_type = "io.containerd.runc.v2"

        [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
          SystemdCgroup = true

        [plugins."io.containerd.grpc.v1.cri".cni]
          bin_dir = "/opt/cni/bin"
          conf_dir = "/etc/cni/net.d"
        """
    )


def render_cni_bridge_config(pod_subnet: str) -> str:
    """Bridge CNI network allocating pod addresses from the node's own subnet."""
    config = {
        "cniVersion": "1.0.0",
        "name": "bridge",
        "type": "bridge",
        "bridge": "cnio0",
        "isGateway": True,
        "ipMasq": False,
        "ipam": {
            "type": "host-local",
            "ranges": [[{"subnet": pod_subnet}]],
            "routes": [{"dst": "0.0.0.0/0"}],
        },
    }
    return json.dumps(config, indent=2) + "\n"


def render_cni_loopback_config() -> str:
    return json.dumps({"cniVersion": "1.1.0", "name": "lo", "type": "loopback"}) + "\n"


def render_kubeconfig(
    cluster_name: str, server: str, ca_pem: str, user: str, token: str
) -> str:
    """Token-authenticated kubeconfig for one component or user."""
    config: Dict[str, object] = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_name,
                "cluster": {
                    "certificate-authority-data": base64.b64encode(
                        ca_pem.encode("utf-8")
                    ).decode("ascii"),
                    "server": server,
                },
            }
        ],
        "users": [{"name": user, "user": {"token": token}}],
        "contexts": [
            {
                "name": "default",
                "context": {"cluster": cluster_name, "user": user},
            }
        ],
        "current-context": "default",
    }
    return yaml.safe_dump(config, sort_keys=False)
