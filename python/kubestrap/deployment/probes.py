"""
kubestrap/deployment/probes.py

Readiness probes gating a role's `started -> verified` transition:
  - tcp: the port accepts a connection
  - http: GET returns a 2xx status (https verified against the cluster CA)
  - command: a remote command exits 0, optionally printing `expect`
    on at least `expect_count` lines

wait_ready wraps a probe in the bounded retry policy; each attempt is
itself bounded by a timeout, so a probe never blocks indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Awaitable, Callable, List, Optional, Union

import aiohttp

from kubestrap.deployment.tasks import NodeExecutor
from kubestrap.models.install import ProbePolicy, ProbeSpec
from kubestrap.models.inventory import InventoryGroup
from kubestrap.models.node import NodeRecord
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.async_retry import SleepFunc, retry_call

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 10.0


class ProbeFailure(Exception):
    """A probe did not succeed.

    Attributes:
        attempts: Attempts made when raised from wait_ready (0 for a single check).
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


ProbeRunner = Callable[[ProbeSpec, List[NodeRecord]], Awaitable[None]]


async def tcp_check(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> None:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        raise ProbeFailure(
            f"{host}:{port} not accepting connections ({exc!r})"
        ) from exc
    writer.close()
    await writer.wait_closed()


async def http_check(
    host: str,
    port: int,
    path: str = "/healthz",
    scheme: str = "https",
    ca_pem: Optional[str] = None,
    timeout: float = PROBE_TIMEOUT,
) -> None:
    url = f"{scheme}://{host}:{port}{path}"
    ssl_arg: Union[ssl.SSLContext, bool] = True
    if scheme == "https":
        ssl_arg = ssl.create_default_context(cadata=ca_pem) if ca_pem else False
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as session:
            async with session.get(url, ssl=ssl_arg) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    raise ProbeFailure(f"GET {url} -> {resp.status}: {body[:200]}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise ProbeFailure(f"GET {url} failed ({exc!r})") from exc


async def command_check(
    executor: NodeExecutor,
    node: NodeRecord,
    command: List[str],
    expect: Optional[str] = None,
    expect_count: Optional[int] = None,
) -> None:
    try:
        output = await executor.run(node, command, retries=1)
    except CommandError as exc:
        raise ProbeFailure(
            f"{node.node_id}: {' '.join(command)} failed ({exc})"
        ) from exc
    if expect is None:
        return
    matches = sum(1 for line in output.splitlines() if expect in line)
    required = expect_count if expect_count is not None else 1
    if matches < required:
        raise ProbeFailure(
            f"{node.node_id}: expected {required} line(s) containing "
            f"'{expect}', found {matches}"
        )


def probe_runner(
    executor: NodeExecutor,
    inventory: InventoryGroup,
    ca_pem: Optional[str] = None,
) -> ProbeRunner:
    """Build the default ProbeRunner bound to an executor and inventory."""

    async def _run(probe: ProbeSpec, members: List[NodeRecord]) -> None:
        if probe.kind == "command" and probe.run_on is not None:
            runners = inventory.members(probe.run_on)[:1]
            if not runners:
                raise ProbeFailure(
                    f"no {probe.run_on.value} node to run '{probe.name}'"
                )
            targets = runners
        else:
            targets = members if probe.scope == "each" else members[:1]
        if not targets:
            raise ProbeFailure(f"probe '{probe.name}' has no target nodes")

        for node in targets:
            if probe.kind == "tcp":
                assert probe.port is not None
                await tcp_check(node.ssh_host, probe.port)
            elif probe.kind == "http":
                assert probe.port is not None
                await http_check(
                    node.ssh_host, probe.port, probe.path, probe.scheme, ca_pem
                )
            else:
                await command_check(
                    executor, node, probe.command, probe.expect, probe.expect_count
                )

    return _run


async def wait_ready(
    probe: ProbeSpec,
    members: List[NodeRecord],
    runner: ProbeRunner,
    policy: ProbePolicy,
    sleep: SleepFunc = asyncio.sleep,
) -> int:
    """
    Retry a probe until it passes or the policy's attempts are exhausted.

    Returns:
        The number of attempts made.

    Raises:
        ProbeFailure: From the final attempt.
    """
    attempts = 0

    async def _attempt() -> None:
        nonlocal attempts
        attempts += 1
        await runner(probe, members)

    try:
        await retry_call(
            _attempt,
            retries=policy.retries,
            delay=policy.delay,
            backoff=policy.backoff,
            retry_on=(ProbeFailure,),
            noisy=True,
            sleep=sleep,
            description=f"probe {probe.name}",
        )
    except ProbeFailure as exc:
        raise ProbeFailure(f"{exc} (after {attempts} attempts)", attempts) from exc
    return attempts
