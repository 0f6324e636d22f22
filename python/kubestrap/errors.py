"""
kubestrap/errors.py

Error taxonomy for a bootstrap run. Every error names the entity it is
about (node, role or resource) so the orchestrator can surface the first
fatal failure while still reporting partial progress.

  - ConfigurationError: invalid topology, rejected before any provider call.
  - ProvisioningError: one or more resources failed; carries the partial result.
  - CertificationError: the address set is incomplete; blocks installation.
  - InstallationError: a task failed or a readiness probe exhausted its retries.
  - ReconciliationTimeout: pod subnets were not all discovered in time.
  - RoutingError: routing state could not be applied on some workers.
  - ClusterLockedError: another run holds the lock for the same cluster.
  - SmokeTestError: the smoke deployment did not become available.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from kubestrap.models.node import ProvisionResult


class KubestrapError(Exception):
    """Base class for every orchestrator failure."""


class ConfigurationError(KubestrapError):
    """The topology or a derived plan is invalid.

    Attributes:
        problems: One line per violated rule.
    """

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems: List[str] = list(problems)
        super().__init__(
            "Invalid cluster configuration: " + "; ".join(self.problems)
        )


class ProvisioningError(KubestrapError):
    """Provider calls failed for specific resources.

    The attached result still names every node that did reach `ready`,
    so a caller can report progress and simply re-run.
    """

    def __init__(self, result: ProvisionResult) -> None:
        self.result = result
        failed = ", ".join(
            f"{name} ({cause})" for name, cause in sorted(result.failures.items())
        )
        super().__init__(f"Provisioning incomplete; failed resources: {failed}")


class CertificationError(KubestrapError):
    """Certificates cannot be generated for a partial topology."""

    def __init__(self, node_ids: Sequence[str]) -> None:
        self.node_ids: List[str] = list(node_ids)
        super().__init__(
            "Cannot certify cluster; nodes without a resolved address: "
            + ", ".join(self.node_ids)
        )


class InstallationError(KubestrapError):
    """A role failed to install or to pass its readiness probe.

    Attributes:
        role: The role that moved to `failed`.
        node_id: The node the failing task ran on, if any.
        step: The task or probe that failed.
    """

    def __init__(
        self,
        role: str,
        step: str,
        cause: str,
        node_id: Optional[str] = None,
    ) -> None:
        self.role = role
        self.step = step
        self.node_id = node_id
        self.cause = cause
        where = f" on {node_id}" if node_id else ""
        super().__init__(f"Role '{role}' failed at {step}{where}: {cause}")


class ReconciliationTimeout(KubestrapError):
    """Some worker nodes never reported a pod subnet."""

    def __init__(self, unresolved: Sequence[str], timeout: float) -> None:
        self.unresolved: List[str] = list(unresolved)
        self.timeout = timeout
        super().__init__(
            f"Pod subnets not assigned after {timeout:.0f}s for: "
            + ", ".join(self.unresolved)
        )


class RoutingError(KubestrapError):
    """Routes, masquerade rules or the bridge config failed on some workers.

    Attributes:
        failures: node id -> the step that failed and its cause.
    """

    def __init__(self, failures: Mapping[str, str]) -> None:
        self.failures: Dict[str, str] = dict(failures)
        super().__init__(
            "Network reconciliation failed on: "
            + "; ".join(f"{nid} ({cause})" for nid, cause in sorted(failures.items()))
        )


class ClusterLockedError(KubestrapError):
    """Another orchestration run is active for the same cluster."""

    def __init__(self, cluster_name: str, lock_path: str) -> None:
        self.cluster_name = cluster_name
        self.lock_path = lock_path
        super().__init__(
            f"Cluster '{cluster_name}' is locked by another run ({lock_path})."
        )


class SmokeTestError(KubestrapError):
    """The smoke deployment never became available."""

    def __init__(self, deployment: str, cause: str) -> None:
        self.deployment = deployment
        self.cause = cause
        super().__init__(f"Smoke deployment '{deployment}' failed: {cause}")
