"""
kubestrap/deployment/tasks.py

Idempotent installation tasks executed on cluster nodes. Every task first
checks the node and only applies a change when the node differs from the
target state, so re-running a task list on a converged node changes nothing:

  - UploadFile / ServiceUnit: compare the remote sha256 with the rendered content,
    then the file mode.
  - FetchBinary: compare a version marker holding the source URL.
  - InstallPackages: dpkg status check before apt-get.
  - CommandTask: run `check`; run `apply` only if the check fails.
  - EnableService: enable if needed; restart if the unit is not active, a
    watched file changed in this run, or the watched files no longer match
    the fingerprint recorded after the last restart.

Remote execution goes through a NodeExecutor; SSHExecutor is the ssh-based
implementation (trust-on-first-use host keys, per-node cache).
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import textwrap
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set

from kubestrap.deployment.units import render_sysctl_config
from kubestrap.models.install import (
    CommandTask,
    EnableService,
    FetchBinary,
    InstallPackages,
    ServiceUnit,
    TaskSpec,
    UploadFile,
)
from kubestrap.models.node import NodeRecord
from kubestrap.models.ssh import SSHConfig
from kubestrap.models.topology import NodeRole
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.ssh import (
    remote_file_mode,
    remote_sha256,
    run_ssh_command,
    sha256_text,
    ssh_get_server_key,
    upload_content,
)

logger = logging.getLogger(__name__)


class NodeExecutor(ABC):
    """Remote execution interface to cluster nodes."""

    @abstractmethod
    async def run(
        self,
        node: NodeRecord,
        command: List[str],
        *,
        sensitive: bool = True,
        retries: Optional[int] = None,
    ) -> str:
        """Run a command on the node and return its stdout.

        Raises:
            CommandError: If the command exits non-zero.
        """

    @abstractmethod
    async def put_file(
        self, node: NodeRecord, content: str, path: str, mode: str = "0644"
    ) -> None:
        """Write `content` to `path` on the node (as root)."""

    @abstractmethod
    async def file_digest(self, node: NodeRecord, path: str) -> Optional[str]:
        """sha256 of a remote file, or None if it does not exist."""

    @abstractmethod
    async def file_mode(self, node: NodeRecord, path: str) -> Optional[str]:
        """Octal permission bits of a remote file ('644'), or None if missing."""


class SSHExecutor(NodeExecutor):
    """NodeExecutor over ssh, with host keys learned on first contact."""

    def __init__(
        self,
        user: str,
        private_key: str,
        port: int = 22,
        retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 300.0,
    ) -> None:
        self.user = user
        self.private_key = private_key
        self.port = port
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._configs: Dict[str, SSHConfig] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def ssh_config(self, node: NodeRecord) -> SSHConfig:
        """SSHConfig for the node, fetching its host keys on first use."""
        lock = self._locks.setdefault(node.node_id, asyncio.Lock())
        async with lock:
            cached = self._configs.get(node.node_id)
            if cached is not None and cached.hostname == node.ssh_host:
                return cached
            cfg = SSHConfig(
                user=self.user,
                hostname=node.ssh_host,
                port=self.port,
                private_key=self.private_key,
            )
            host_keys = await ssh_get_server_key(
                cfg, retries=self.retries, retry_delay=self.retry_delay
            )
            logger.info("Learned %d host key(s) for %s", len(host_keys), node.node_id)
            cfg = cfg.with_host_keys(host_keys)
            self._configs[node.node_id] = cfg
            return cfg

    async def run(
        self,
        node: NodeRecord,
        command: List[str],
        *,
        sensitive: bool = True,
        retries: Optional[int] = None,
    ) -> str:
        return await run_ssh_command(
            await self.ssh_config(node),
            command,
            sensitive=sensitive,
            retries=self.retries if retries is None else retries,
            retry_delay=self.retry_delay,
            timeout=self.timeout,
        )

    async def put_file(
        self, node: NodeRecord, content: str, path: str, mode: str = "0644"
    ) -> None:
        await upload_content(
            await self.ssh_config(node),
            content,
            path,
            mode=mode,
            retries=self.retries,
            retry_delay=self.retry_delay,
            timeout=self.timeout,
        )

    async def file_digest(self, node: NodeRecord, path: str) -> Optional[str]:
        return await remote_sha256(
            await self.ssh_config(node),
            path,
            retries=self.retries,
            retry_delay=self.retry_delay,
        )

    async def file_mode(self, node: NodeRecord, path: str) -> Optional[str]:
        return await remote_file_mode(
            await self.ssh_config(node),
            path,
            retries=self.retries,
            retry_delay=self.retry_delay,
        )


# ----------------------------------------------------------------------
# Task application
# ----------------------------------------------------------------------


async def _succeeds(
    executor: NodeExecutor, node: NodeRecord, command: List[str]
) -> bool:
    """True if a check command exits 0 (single attempt, no retries)."""
    try:
        await executor.run(node, command, retries=1)
    except CommandError:
        return False
    return True


def _fetch_script(task: FetchBinary) -> str:
    tmp = f"/tmp/kubestrap-fetch-{task.name}"
    dest = shlex.quote(task.dest_dir)
    if task.archive_members:
        members = " ".join(shlex.quote(m) for m in task.archive_members)
        install = (
            f"sudo tar -xzf {tmp} -C {dest} "
            f"--strip-components={task.strip_components} {members}"
        )
    else:
        install = f"sudo install -m 0755 {tmp} {dest}/{shlex.quote(task.name)}"
    return textwrap.dedent(
        f"""\
        set -eu
        sudo install -d -m 0755 {dest}
        curl -fsSL --retry 3 -o {tmp} {shlex.quote(task.url)}
        {install}
        rm -f {tmp}
        """
    )


def _same_mode(actual: Optional[str], wanted: str) -> bool:
    return actual is not None and int(actual, 8) == int(wanted, 8)


async def watch_fingerprint(
    executor: NodeExecutor, node: NodeRecord, paths: List[str]
) -> str:
    """One 'path sha256' line per watched path; '-' marks a missing file."""
    ordered = sorted(set(paths))
    digests = await asyncio.gather(
        *(executor.file_digest(node, path) for path in ordered)
    )
    return "".join(
        f"{path} {digest or '-'}\n" for path, digest in zip(ordered, digests)
    )


def installed_paths(task: FetchBinary) -> List[str]:
    """Remote paths a fetch task writes (used to trigger service restarts)."""
    if not task.archive_members:
        return [f"{task.dest_dir}/{task.name}"]
    return [
        f"{task.dest_dir}/{os.path.basename(member.rstrip('/'))}"
        for member in task.archive_members
    ]


async def apply_task(
    executor: NodeExecutor,
    node: NodeRecord,
    task: TaskSpec,
    changed_paths: Set[str],
    before_apply: Callable[[], None] = lambda: None,
) -> bool:
    """
    Converge one task on one node.

    Args:
        executor: Remote execution interface.
        node: Target node.
        task: The task spec.
        changed_paths: Paths written so far on this node in this run; updated
            with whatever this task writes.
        before_apply: Called right before the first mutating command.

    Returns:
        True if the node was changed.

    Raises:
        CommandError: If a mutating command fails.
    """
    if isinstance(task, (UploadFile, ServiceUnit)):
        path = task.path
        mode = task.mode if isinstance(task, UploadFile) else "0644"
        if await executor.file_digest(node, path) == sha256_text(task.content):
            if _same_mode(await executor.file_mode(node, path), mode):
                return False
            before_apply()
            logger.info("%s: setting mode %s on %s", node.node_id, mode, path)
            await executor.run(node, ["sudo", "chmod", mode, path])
            return True
        before_apply()
        await executor.put_file(node, task.content, path, mode=mode)
        if isinstance(task, ServiceUnit):
            await executor.run(node, ["sudo", "systemctl", "daemon-reload"])
        changed_paths.add(path)
        return True

    if isinstance(task, FetchBinary):
        marker = task.url + "\n"
        if await executor.file_digest(node, task.marker_path) == sha256_text(marker):
            return False
        before_apply()
        await executor.run(node, ["bash", "-c", _fetch_script(task)], sensitive=False)
        await executor.put_file(node, marker, task.marker_path)
        changed_paths.update(installed_paths(task))
        return True

    if isinstance(task, InstallPackages):
        check = ["dpkg", "-s"] + task.packages
        if await _succeeds(executor, node, check):
            return False
        before_apply()
        script = (
            "sudo apt-get update -y && sudo DEBIAN_FRONTEND=noninteractive "
            "apt-get install -y " + " ".join(shlex.quote(p) for p in task.packages)
        )
        await executor.run(node, ["bash", "-c", script], sensitive=False)
        return True

    if isinstance(task, CommandTask):
        if await _succeeds(executor, node, task.check):
            return False
        before_apply()
        await executor.run(node, task.apply)
        return True

    if isinstance(task, EnableService):
        unit = task.unit_name
        changed = False
        enabled_check = ["systemctl", "is-enabled", "--quiet", unit]
        if not await _succeeds(executor, node, enabled_check):
            before_apply()
            await executor.run(node, ["sudo", "systemctl", "enable", unit])
            changed = True
        active = await _succeeds(
            executor, node, ["systemctl", "is-active", "--quiet", unit]
        )
        stale = sorted(p for p in task.watches if p in changed_paths)
        fingerprint = await watch_fingerprint(executor, node, task.watches)
        recorded = await executor.file_digest(node, task.fingerprint_path)
        drifted = recorded != sha256_text(fingerprint)
        if not active or stale or drifted:
            before_apply()
            if not active:
                reason = "not active"
            elif stale:
                reason = "changed " + ", ".join(stale)
            else:
                reason = "watched files differ from the last restart"
            logger.info("%s: restarting %s (%s)", node.node_id, unit, reason)
            await executor.run(node, ["sudo", "systemctl", "restart", unit])
            if drifted:
                await executor.put_file(node, fingerprint, task.fingerprint_path)
            changed = True
        return changed

    raise TypeError(f"Unsupported task type: {type(task).__name__}")


# ----------------------------------------------------------------------
# Host preparation
# ----------------------------------------------------------------------


def host_preparation_tasks(role: NodeRole) -> List[TaskSpec]:
    """Base OS configuration; workers additionally get conntrack and friends."""
    tasks: List[TaskSpec] = [
        CommandTask(
            name="disable swap",
            check=["bash", "-c", "test -z \"$(swapon --show --noheadings)\""],
            apply=[
                "bash",
                "-c",
                r"sudo swapoff -a && sudo sed -i.bak '/\sswap\s/s/^/#/g' /etc/fstab",
            ],
        ),
        UploadFile(
            path="/etc/modules-load.d/kubestrap.conf",
            content="overlay\nbr_netfilter\n",
        ),
        CommandTask(
            name="load kernel modules",
            check=[
                "bash",
                "-c",
                "lsmod | grep -q '^overlay' && lsmod | grep -q '^br_netfilter'",
            ],
            apply=["bash", "-c", "sudo modprobe overlay && sudo modprobe br_netfilter"],
        ),
        UploadFile(
            path="/etc/sysctl.d/99-kubestrap.conf", content=render_sysctl_config()
        ),
        CommandTask(
            name="apply sysctl",
            check=["bash", "-c", "test \"$(sysctl -n net.ipv4.ip_forward)\" = 1"],
            apply=["sudo", "sysctl", "--system"],
        ),
    ]
    if role is NodeRole.worker:
        tasks.append(InstallPackages(packages=["socat", "conntrack", "ipset"]))
    return tasks
