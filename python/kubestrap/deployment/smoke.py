"""
kubestrap/deployment/smoke.py

Smoke deployment: create an nginx deployment through the control plane,
wait until it reports Available, list where its pods landed, and delete it
again whatever the outcome.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from kubestrap.deployment.installer import ADMIN_KUBECONFIG
from kubestrap.deployment.tasks import NodeExecutor
from kubestrap.errors import SmokeTestError
from kubestrap.models.node import NodeRecord
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.kubectl import kubectl_args

logger = logging.getLogger(__name__)

SMOKE_DEPLOYMENT = "kubestrap-smoke"


class SmokeResult(BaseModel):
    deployment: str
    available: bool = False
    pods: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    def raise_for_status(self) -> None:
        if not self.available:
            raise SmokeTestError(self.deployment, self.error or "not available")


async def run_smoke_test(
    executor: NodeExecutor,
    controller: NodeRecord,
    kubeconfig: str = ADMIN_KUBECONFIG,
    name: str = SMOKE_DEPLOYMENT,
    image: str = "nginx",
    replicas: int = 2,
    timeout: float = 120.0,
) -> SmokeResult:
    """
    Run the smoke deployment from `controller`.

    Returns:
        SmokeResult; `available` is False if the deployment did not become
        available within `timeout` seconds.

    Raises:
        CommandError: If creating or deleting the deployment fails.
    """

    def kubectl(*args: str) -> List[str]:
        return ["sudo"] + kubectl_args(*args, kubeconfig=kubeconfig)

    result = SmokeResult(deployment=name)
    await executor.run(
        controller, kubectl("delete", "deployment", name, "--ignore-not-found")
    )
    logger.info("Creating smoke deployment %s (%d x %s)", name, replicas, image)
    await executor.run(
        controller,
        kubectl(
            "create",
            "deployment",
            name,
            f"--image={image}",
            f"--replicas={replicas}",
        ),
    )
    try:
        try:
            await executor.run(
                controller,
                kubectl(
                    "wait",
                    "--for=condition=Available",
                    f"deployment/{name}",
                    f"--timeout={int(timeout)}s",
                ),
                retries=1,
            )
            result.available = True
        except CommandError as exc:
            result.error = str(exc)
            logger.error("Smoke deployment %s not available: %s", name, exc)

        pods = await executor.run(
            controller,
            kubectl("get", "pods", "-l", f"app={name}", "-o", "wide", "--no-headers"),
        )
        result.pods = [line for line in pods.splitlines() if line.strip()]
    finally:
        logger.info("Deleting smoke deployment %s", name)
        await executor.run(
            controller, kubectl("delete", "deployment", name, "--ignore-not-found")
        )
    return result
