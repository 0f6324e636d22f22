"""
kubestrap/utils/ssh.py

Provides high-level functions for SSH-related operations, leveraging ephemeral
known_hosts and private keys (see kubestrap.utils.ephemeral_file). This includes:
  - ssh_get_server_key: minimal handshake to retrieve server host keys (TOFU).
  - run_ssh_command: strict host-key-checking SSH (expects host_keys in SSHConfig).
  - upload_content: write a file on the node through 'sudo tee'.
  - remote_sha256: digest of a remote file, or None if it does not exist.
  - remote_file_mode: permission bits of a remote file, or None if it is missing.
"""

from __future__ import annotations

import hashlib
import os
import shlex
from typing import List, Optional

import aiofiles
import aiofiles.ospath

from kubestrap.models.ssh import SSHConfig
from kubestrap.utils.async_command_runner import CommandError, run_command
from kubestrap.utils.ephemeral_file import ephemeral_files


def _ssh_base(cfg: SSHConfig, pk_path: str, kh_path: str, strict: str) -> List[str]:
    return [
        "ssh",
        "-p",
        str(cfg.port),
        "-i",
        pk_path,
        "-o",
        "BatchMode=yes",
        "-o",
        f"StrictHostKeyChecking={strict}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
        "-o",
        "ConnectTimeout=15",
        f"{cfg.user}@{cfg.hostname}",
    ]


async def _write_private_key(path: str, private_key: str) -> None:
    async with aiofiles.open(path, "wb") as fpk:
        await fpk.write(private_key.encode("utf-8"))
    os.chmod(path, 0o600)


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: float = 60.0,
) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to retrieve the server's host key lines (TOFU).

    Returns:
      A list of lines from ephemeral known_hosts (the server's keys).

    Raises:
      CommandError: if handshake fails or no host keys found
    """
    async with ephemeral_files("known_hosts", "id_key", prefix="sshkh-") as paths:
        kh_path, pk_path = paths["known_hosts"], paths["id_key"]
        await _write_private_key(pk_path, cfg.private_key)

        ssh_cmd = _ssh_base(cfg, pk_path, kh_path, "accept-new") + ["exit", "0"]
        await run_command(
            ssh_cmd, retries=retries, retry_delay=retry_delay, timeout=timeout
        )

        lines: List[str] = []
        if await aiofiles.ospath.exists(kh_path):
            async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                content = await fkh.readlines()
                lines = [ln.strip() for ln in content if ln.strip()]

        if not lines:
            raise CommandError(
                "ssh_get_server_key found no lines; server key not retrieved."
            )
        return lines


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 300.0,
) -> str:
    """
    Run an SSH command with strict host-key checking (host_keys required).

    Args:
      ssh_config: Must have user, hostname, port, private_key, host_keys
      remote_command: The actual remote command tokens
      sensitive: If True, hides details on error
      retries: how many attempts in total
      retry_delay: seconds between attempts
      timeout: seconds before an attempt is aborted

    Returns:
      captured stdout from the remote command

    Raises:
      CommandError: if host_keys empty or the command fails.
    """
    if not ssh_config.host_keys:
        raise CommandError("run_ssh_command requires non-empty host_keys.")

    async with ephemeral_files("known_hosts", "id_key", prefix="ssh-") as paths:
        kh_path, pk_path = paths["known_hosts"], paths["id_key"]

        async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
            for line in ssh_config.host_keys:
                await fkh.write(line + "\n")
        await _write_private_key(pk_path, ssh_config.private_key)

        ssh_cmd = _ssh_base(ssh_config, pk_path, kh_path, "yes")
        ssh_cmd.append(" ".join(shlex.quote(x) for x in remote_command))

        return await run_command(
            ssh_cmd,
            sensitive=sensitive,
            retries=retries,
            retry_delay=retry_delay,
            timeout=timeout,
        )


async def upload_content(
    ssh_config: SSHConfig,
    content: str,
    remote_path: str,
    *,
    mode: str = "0644",
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 300.0,
) -> None:
    """
    Write `content` to `remote_path` (as root) and set its mode.

    The content is hex-encoded into the command so no shell quoting issues
    arise, then decoded remotely with xxd and written through 'sudo tee'.
    """
    enc = content.encode("utf-8").hex()
    directory = os.path.dirname(remote_path) or "/"
    script = (
        f"sudo install -d -m 0755 {shlex.quote(directory)} && "
        f"echo '{enc}' | xxd -r -p | sudo tee {shlex.quote(remote_path)} >/dev/null && "
        f"sudo chmod {mode} {shlex.quote(remote_path)}"
    )
    await run_ssh_command(
        ssh_config,
        ["bash", "-c", script],
        sensitive=True,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )


async def remote_sha256(
    ssh_config: SSHConfig,
    remote_path: str,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 60.0,
) -> Optional[str]:
    """Return the sha256 hex digest of a remote file, or None if it is missing."""
    script = (
        f"if sudo test -f {shlex.quote(remote_path)}; then "
        f"sudo sha256sum {shlex.quote(remote_path)} | cut -d' ' -f1; fi"
    )
    out = await run_ssh_command(
        ssh_config,
        ["bash", "-c", script],
        sensitive=True,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )
    return out.strip() or None


async def remote_file_mode(
    ssh_config: SSHConfig,
    remote_path: str,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 60.0,
) -> Optional[str]:
    """Return the octal permission bits of a remote file ('644'), or None."""
    quoted = shlex.quote(remote_path)
    script = f"if sudo test -e {quoted}; then sudo stat -c %a {quoted}; fi"
    out = await run_ssh_command(
        ssh_config,
        ["bash", "-c", script],
        sensitive=True,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )
    return out.strip() or None


def sha256_text(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
