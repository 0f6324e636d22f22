"""
kubestrap/utils/ephemeral_file.py

Async context manager for short-lived files (ssh private keys, known_hosts,
terraform var files). Files live in a private directory under /dev/shm when
it exists, otherwise under the system temp directory, and are removed on exit.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

DEFAULT_PARENT = "/dev/shm"


def _parent_dir(requested: Optional[str]) -> str:
    if requested is not None:
        return requested
    return DEFAULT_PARENT if os.path.isdir(DEFAULT_PARENT) else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_files(
    *file_names: str,
    prefix: str = "kubestrap-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create a private (0700) directory and yield a path for each requested file name.

    The files themselves are not created; callers write them. Everything under
    the directory is removed on exit, even if the body raises.

    Args:
        file_names: Names of the files to reserve paths for.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to place the directory; defaults to /dev/shm if present.

    Yields:
        Dict of file name -> absolute path.

    Raises:
        ValueError: If no file names are given.
    """
    if not file_names:
        raise ValueError("At least one ephemeral file name is required.")

    ephemeral_dir = tempfile.mkdtemp(dir=_parent_dir(parent_dir), prefix=prefix)
    try:
        yield {name: os.path.join(ephemeral_dir, name) for name in file_names}
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
