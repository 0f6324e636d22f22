"""
kubestrap/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic and a hard
per-attempt timeout, so no subprocess (ssh, terraform, kubectl) can block a
run indefinitely.

Usage example:
    from kubestrap.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["terraform", "version"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, List, Optional

from kubestrap.utils.async_retry import retry_call

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 300.0,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with retries.

    If the command exits non-zero or runs longer than `timeout` seconds, we
    raise CommandError. When `sensitive=True`, we omit the command, stdout,
    and stderr from the error message.

    Args:
        command: The command and arguments to execute.
        sensitive: If True, hides command details in the raised error.
        env: Additional environment variables to add or override.
        cwd: Working directory for the command.
        retries: How many attempts in total. Values below 1 mean a single attempt.
        retry_delay: Delay in seconds between attempts.
        timeout: Seconds before an attempt is killed; None disables the limit.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all attempts.
    """
    proc_env = None
    if env:
        proc_env = os.environ.copy()
        proc_env.update(env)

    async def _attempt() -> str:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            detail = "" if sensitive else f" Command: {' '.join(command)}"
            raise CommandError(f"Command timed out after {timeout}s.{detail}")

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode != 0:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
            )

        return stdout_str

    logger.debug("run_command: %s", command[0] if sensitive else " ".join(command))
    return await retry_call(
        _attempt,
        retries=max(retries, 1),
        delay=retry_delay,
        retry_on=(CommandError,),
        description=command[0],
    )
