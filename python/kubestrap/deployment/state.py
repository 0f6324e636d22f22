"""
kubestrap/deployment/state.py

Persisted run state and generated artifacts of one cluster, kept under
'<state_dir>/<cluster_name>/':

  state.json                  ClusterState (records, bundle, run journal)
  ca.pem, kubernetes.pem      public certificate material
  ca-key.pem, kubernetes-key.pem, token.csv, admin.kubeconfig   (0600)
  inventory/...               rendered inventory group files
  units/<node>/<unit>.service rendered service unit definitions

Every file is written atomically (temporary file + rename), so an aborted
run never leaves a truncated state document behind.
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Dict, Optional

import aiofiles

from kubestrap.models.pki import CertificateBundle
from kubestrap.models.state import ClusterState
from kubestrap.models.validator import validate_json

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644


class StateStore:
    """Reads and writes the state directory of a single cluster."""

    def __init__(self, cluster_dir: str, cluster_name: str) -> None:
        self.cluster_dir = cluster_dir
        self.cluster_name = cluster_name

    def path(self, relative: str) -> str:
        full = os.path.normpath(os.path.join(self.cluster_dir, relative))
        if os.path.commonpath([full, self.cluster_dir]) != os.path.normpath(
            self.cluster_dir
        ):
            raise ValueError(f"Artifact path escapes the state directory: {relative}")
        return full

    async def write_file(
        self, relative: str, content: str, mode: int = PUBLIC_MODE
    ) -> str:
        """Atomically write `content` to a path relative to the cluster dir."""
        target = self.path(relative)
        parent = os.path.dirname(target)
        os.makedirs(parent, mode=0o700, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp-")
        os.close(fd)
        try:
            os.chmod(tmp_path, mode)
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(content)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug("Wrote %s (mode %o)", target, mode)
        return target

    async def read_file(self, relative: str) -> Optional[str]:
        target = self.path(relative)
        if not os.path.exists(target):
            return None
        async with aiofiles.open(target, "r") as f:
            return await f.read()

    async def load(self) -> ClusterState:
        """The persisted ClusterState, or an empty one for a new cluster.

        Raises:
            ValueError: If the state document exists but does not validate.
        """
        raw = await self.read_file(STATE_FILE)
        if raw is None:
            logger.info("No saved state for cluster '%s'", self.cluster_name)
            return ClusterState(cluster_name=self.cluster_name)
        state = validate_json(raw, ClusterState)
        if state.cluster_name != self.cluster_name:
            raise ValueError(
                f"State in {self.cluster_dir} belongs to cluster "
                f"'{state.cluster_name}', not '{self.cluster_name}'."
            )
        return state

    async def save(self, state: ClusterState) -> None:
        # state.json carries keys and tokens
        await self.write_file(
            STATE_FILE, state.model_dump_json(indent=2), mode=PRIVATE_MODE
        )

    async def write_files(self, files: Dict[str, str], mode: int = PUBLIC_MODE) -> None:
        for relative, content in sorted(files.items()):
            await self.write_file(relative, content, mode=mode)

    async def write_bundle(self, bundle: CertificateBundle) -> None:
        """Write certificate material; keys and the token file are 0600."""
        await self.write_file("ca.pem", bundle.ca_cert_pem)
        await self.write_file("kubernetes.pem", bundle.server_cert_pem)
        await self.write_file("ca-key.pem", bundle.ca_key_pem, mode=PRIVATE_MODE)
        await self.write_file(
            "kubernetes-key.pem", bundle.server_key_pem, mode=PRIVATE_MODE
        )
        await self.write_file("token.csv", bundle.token_csv(), mode=PRIVATE_MODE)
