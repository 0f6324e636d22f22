"""
kubestrap/utils/terraform/commands.py

Implements Terraform commands (init, apply, destroy, show) plus helpers for
building command arrays. Variables are handed over in an ephemeral
'*.auto.tfvars.json' file that is removed right after the command, and
apply/destroy accept '-target' addresses so single resources can be
converged without touching their siblings.

Exports the following primary functions:
    - init_terraform
    - apply_terraform
    - destroy_terraform
    - read_terraform_state
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import aiofiles

from kubestrap.models.terraform import TerraformBackendRef, TerraformState
from kubestrap.utils.async_command_runner import run_command
from kubestrap.utils.ephemeral_file import ephemeral_files

logger = logging.getLogger(__name__)


def _provider_error_parser(stderr: str) -> Optional[str]:
    """Shorten well-known provider failures into a single line."""
    low = stderr.lower()
    if "requestlimitexceeded" in low or "throttling" in low or "rate exceeded" in low:
        return "Provider API rate limit exceeded; retry later."
    if "insufficientinstancecapacity" in low:
        return "Provider has insufficient capacity for the requested instance type."
    if "unauthorizedoperation" in low or "accessdenied" in low:
        return "Provider credentials are not authorized for this operation."
    return None


def _make_base_command(
    action: str,
    override_lock: bool,
    reconfigure: bool,
    targets: Sequence[str] = (),
) -> List[str]:
    """Builds the Terraform command for `action`, optionally adding flags.

    Returns:
        A list of command tokens, e.g. ["terraform", "apply", "-no-color"].
    """
    base = ["terraform", action, "-no-color"]

    show_flags = ["-json"] if action == "show" else []
    apply_destroy_flags = (
        (["-auto-approve", "-input=false"] + (["-lock=false"] if override_lock else []))
        if action in ("apply", "destroy")
        else []
    )
    target_flags = (
        [f"-target={t}" for t in targets] if action in ("apply", "destroy") else []
    )
    init_flags = (
        ["-input=false"] + (["-reconfigure"] if reconfigure else [])
        if action == "init"
        else []
    )
    return base + show_flags + apply_destroy_flags + target_flags + init_flags


@asynccontextmanager
async def maybe_tfvars(
    action: str, variables: Optional[Dict[str, Any]]
) -> AsyncGenerator[List[str], None]:
    """
    Yield ['-var-file', path] for apply/destroy when variables are given,
    writing them into an ephemeral JSON var file; otherwise yield [].
    """
    if action not in ("apply", "destroy") or not variables:
        yield []
        return

    async with ephemeral_files("cluster.auto.tfvars.json", prefix="tfvars-") as paths:
        tfvars_file = paths["cluster.auto.tfvars.json"]
        async with aiofiles.open(tfvars_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(variables, indent=2, sort_keys=True))
        yield ["-var-file", tfvars_file]


async def _terraform_command(
    action: str,
    ref: TerraformBackendRef,
    env: Optional[Dict[str, str]],
    override_lock: bool,
    variables: Optional[Dict[str, Any]],
    targets: Sequence[str],
    reconfigure: bool,
    sensitive: bool,
    retries: int,
    retry_delay: float,
    timeout: Optional[float],
) -> str:
    """Run 'terraform <action>' in the root module and return its stdout.

    Raises:
        ValueError: If the root module directory does not exist.
        CommandError: If the command fails after all retries.
    """
    if not os.path.isdir(ref.root):
        raise ValueError(f"Terraform directory not found: {ref.root}")

    cmd_env = dict(env or {})
    if ref.workspace != "default":
        cmd_env["TF_WORKSPACE"] = ref.workspace

    base_cmd = _make_base_command(action, override_lock, reconfigure, targets)
    async with maybe_tfvars(action, variables) as tfvars_args:
        logger.debug("terraform %s in %s targets=%s", action, ref.root, list(targets))
        return await run_command(
            base_cmd + tfvars_args,
            sensitive=sensitive,
            env=cmd_env or None,
            cwd=ref.root,
            retries=retries,
            retry_delay=retry_delay,
            timeout=timeout,
            error_parser=_provider_error_parser,
        )


async def init_terraform(
    ref: TerraformBackendRef,
    env: Optional[Dict[str, str]] = None,
    reconfigure: bool = False,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 5.0,
    timeout: Optional[float] = 600.0,
) -> None:
    """Run 'terraform init' in the root module."""
    await _terraform_command(
        action="init",
        ref=ref,
        env=env,
        override_lock=False,
        variables=None,
        targets=(),
        reconfigure=reconfigure,
        sensitive=sensitive,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )


async def apply_terraform(
    ref: TerraformBackendRef,
    env: Optional[Dict[str, str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    targets: Sequence[str] = (),
    override_lock: bool = False,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 5.0,
    timeout: Optional[float] = 1800.0,
) -> None:
    """Run 'terraform apply', optionally restricted to `targets`.

    Args:
        ref: Root module + workspace.
        env: Additional environment variables (provider credentials).
        variables: Written to an ephemeral var file.
        targets: Resource addresses passed as '-target='.
        override_lock: If True => '-lock=false'.
        sensitive: If True => hide command/stdout/stderr in errors.
        retries: Total attempts.
        retry_delay: Seconds between attempts.
        timeout: Seconds per attempt.
    """
    await _terraform_command(
        action="apply",
        ref=ref,
        env=env,
        override_lock=override_lock,
        variables=variables,
        targets=targets,
        reconfigure=False,
        sensitive=sensitive,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )


async def destroy_terraform(
    ref: TerraformBackendRef,
    env: Optional[Dict[str, str]] = None,
    variables: Optional[Dict[str, Any]] = None,
    targets: Sequence[str] = (),
    override_lock: bool = False,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 5.0,
    timeout: Optional[float] = 1800.0,
) -> None:
    """Run 'terraform destroy', optionally restricted to `targets`."""
    await _terraform_command(
        action="destroy",
        ref=ref,
        env=env,
        override_lock=override_lock,
        variables=variables,
        targets=targets,
        reconfigure=False,
        sensitive=sensitive,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )


async def read_terraform_state(
    ref: TerraformBackendRef,
    env: Optional[Dict[str, str]] = None,
    sensitive: bool = True,
    retries: int = 3,
    retry_delay: float = 5.0,
    timeout: Optional[float] = 300.0,
) -> TerraformState:
    """Run 'terraform show -json' and return the parsed TerraformState.

    Raises:
        RuntimeError: If the show output is empty.
    """
    output = await _terraform_command(
        action="show",
        ref=ref,
        env=env,
        override_lock=False,
        variables=None,
        targets=(),
        reconfigure=False,
        sensitive=sensitive,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
    )
    if not output:
        raise RuntimeError("Failed to retrieve terraform state (empty output).")
    return TerraformState.model_validate_json(output)
