"""
kubestrap/utils/lock.py

Mutual exclusion of orchestration runs per cluster. A run holds an
exclusive, non-blocking fcntl lock on '<state_dir>/<cluster>/.lock' plus an
in-process asyncio lock; a second run fails fast with ClusterLockedError
rather than waiting.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict

from kubestrap.errors import ClusterLockedError

_LOCAL_LOCKS: Dict[str, asyncio.Lock] = {}


@asynccontextmanager
async def cluster_lock(
    state_dir: str, cluster_name: str
) -> AsyncGenerator[str, None]:
    """
    Hold the run lock of `cluster_name` for the duration of the block.

    Yields:
        The lock file path.

    Raises:
        ClusterLockedError: If another run (in this or another process) holds it.
    """
    cluster_dir = os.path.join(state_dir, cluster_name)
    os.makedirs(cluster_dir, mode=0o700, exist_ok=True)
    lock_path = os.path.join(cluster_dir, ".lock")

    local = _LOCAL_LOCKS.setdefault(lock_path, asyncio.Lock())
    if local.locked():
        raise ClusterLockedError(cluster_name, lock_path)

    async with local:
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise ClusterLockedError(cluster_name, lock_path) from exc
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            try:
                yield lock_path
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
