# kubestrap/models/settings.py

from __future__ import annotations

import os
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from kubestrap.models.install import ProbePolicy


class KubestrapSettings(BaseSettings):
    """
    Pydantic settings for a bootstrap run.
    By default, these fields map to environment variables prefixed with `KUBESTRAP_`.
    For example, `KUBESTRAP_SSH_USER`, `KUBESTRAP_PROBE_RETRIES`, etc.
    """

    model_config = SettingsConfigDict(env_prefix="KUBESTRAP_")

    state_dir: str = os.path.join(os.path.expanduser("~"), ".kubestrap")

    # Remote execution
    ssh_user: str = "ubuntu"
    ssh_port: int = 22
    ssh_private_key_path: Optional[str] = None
    command_retries: int = 3
    command_retry_delay: float = 1.0
    command_timeout: float = 300.0

    # Cluster software
    kubernetes_version: str = "1.29.2"
    etcd_version: str = "3.5.12"
    containerd_version: str = "1.7.13"
    runc_version: str = "1.1.12"
    cni_plugins_version: str = "1.4.0"

    # Readiness probes
    probe_retries: int = 5
    probe_delay: float = 5.0
    probe_backoff: float = 1.0

    # Pod-subnet discovery
    subnet_poll_timeout: float = 300.0
    subnet_poll_interval: float = 10.0

    # Provider
    provider_retries: int = 3
    provider_retry_delay: float = 5.0
    terraform_root: str = "terraform/cluster"
    terraform_workspace: str = "default"

    def probe_policy(self) -> ProbePolicy:
        return ProbePolicy(
            retries=self.probe_retries,
            delay=self.probe_delay,
            backoff=self.probe_backoff,
        )

    def cluster_dir(self, cluster_name: str) -> str:
        return os.path.join(self.state_dir, cluster_name)
