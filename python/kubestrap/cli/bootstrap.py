#!/usr/bin/env python3
"""
kubestrap/cli/bootstrap.py

CLI for bootstrapping a cluster from a topology file:

  1) "bootstrap": provision, certify, install and network the whole cluster.
  2) "routes":    re-run pod-subnet discovery and routing only.
  3) "smoke":     run the nginx smoke deployment only.
  4) "plan":      print the provider changes a bootstrap would make.
  5) "status":    print the persisted run journal and node records.

Run settings (ssh user/key, versions, retries, state dir) come from
KUBESTRAP_* environment variables; see KubestrapSettings.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import aiofiles

from kubestrap.deployment.bootstrap import (
    bootstrap_cluster,
    reconcile_network_only,
    smoke_test_cluster,
    store_for,
)
from kubestrap.deployment.providers import TerraformProvider
from kubestrap.deployment.provisioner import preview_plan
from kubestrap.deployment.tasks import SSHExecutor
from kubestrap.errors import ProvisioningError
from kubestrap.models.settings import KubestrapSettings
from kubestrap.models.terraform import TerraformBackendRef
from kubestrap.models.topology import ClusterTopology, load_topology_yaml


async def _load_topology(path: str) -> ClusterTopology:
    async with aiofiles.open(path, "r") as f:
        return load_topology_yaml(await f.read())


async def _executor(settings: KubestrapSettings) -> SSHExecutor:
    if not settings.ssh_private_key_path:
        raise ValueError("KUBESTRAP_SSH_PRIVATE_KEY_PATH must point to the ssh key.")
    async with aiofiles.open(settings.ssh_private_key_path, "r") as f:
        private_key = await f.read()
    return SSHExecutor(
        user=settings.ssh_user,
        private_key=private_key,
        port=settings.ssh_port,
        retries=settings.command_retries,
        retry_delay=settings.command_retry_delay,
        timeout=settings.command_timeout,
    )


def _provider(
    topology: ClusterTopology, settings: KubestrapSettings
) -> TerraformProvider:
    return TerraformProvider(
        ref=TerraformBackendRef(
            root=settings.terraform_root, workspace=settings.terraform_workspace
        ),
        extra_variables={
            "cluster_name": topology.cluster_name,
            "region": topology.region,
        },
        retries=settings.provider_retries,
        retry_delay=settings.provider_retry_delay,
    )


async def _run_bootstrap(args: argparse.Namespace, settings: KubestrapSettings) -> None:
    """Handle the 'bootstrap' subcommand."""
    topology = await _load_topology(args.topology)
    report = await bootstrap_cluster(
        topology,
        settings,
        _provider(topology, settings),
        await _executor(settings),
        decommission=args.decommission,
        control_plane_endpoint=args.control_plane_endpoint,
    )
    for line in report.summary_lines():
        print(line)
    store = store_for(settings, topology.cluster_name)
    print(f"admin kubeconfig: {store.path('admin.kubeconfig')}")


async def _run_routes(args: argparse.Namespace, settings: KubestrapSettings) -> None:
    """Handle the 'routes' subcommand."""
    topology = await _load_topology(args.topology)
    result = await reconcile_network_only(topology, settings, await _executor(settings))
    for node_id, subnet in sorted(result.assignments.subnets.items()):
        print(f"{node_id}: {subnet}")
    print(
        f"{len(result.routes)} route(s), {len(result.masquerade_rules)} masquerade "
        f"rule(s), {len(result.removed_routes)} stale route(s) removed"
    )


async def _run_smoke(args: argparse.Namespace, settings: KubestrapSettings) -> None:
    """Handle the 'smoke' subcommand."""
    topology = await _load_topology(args.topology)
    result = await smoke_test_cluster(
        topology,
        settings,
        await _executor(settings),
        image=args.image,
        timeout=args.timeout,
    )
    print(f"Deployment {result.deployment} became available:")
    for line in result.pods:
        print(f"  {line}")


async def _run_plan(args: argparse.Namespace, settings: KubestrapSettings) -> None:
    """Handle the 'plan' subcommand."""
    topology = await _load_topology(args.topology)
    plan = await preview_plan(
        topology, _provider(topology, settings), decommission=args.decommission
    )
    if plan.is_empty:
        print("No changes. Infrastructure matches the topology.")
    for action in plan.actions:
        print(f"{action.action.value:8} {action.address}")
    for name in plan.retained:
        print(f"retained {name} (pass --decommission {name} to remove)")
    summary = plan.summary()
    print(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['destroy']} to destroy."
    )


async def _run_status(args: argparse.Namespace, settings: KubestrapSettings) -> None:
    """Handle the 'status' subcommand."""
    topology = await _load_topology(args.topology)
    cluster_name = topology.cluster_name
    state = await store_for(settings, cluster_name).load()
    journal = state.journal
    print(f"cluster: {cluster_name}")
    print(f"last run started: {journal.started_at or 'never'}")
    print(
        "completed steps: "
        + (", ".join(step.value for step in journal.completed) or "none")
    )
    for role, role_state in journal.role_states.items():
        print(f"role {role.value}: {role_state.value}")
    if journal.error:
        print(f"error: {journal.error}")
    for rec in state.records:
        print(
            f"{rec.node_id:14} {rec.status.value:8} {rec.private_ip or '-':15} "
            f"{rec.public_ip or '-'}"
        )


def _add_topology(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--topology",
        required=True,
        help="Path of the cluster topology YAML file.",
    )


def _add_decommission(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--decommission",
        action="append",
        default=[],
        metavar="NODE_ID",
        help="Allow destroying this node's instance (repeatable).",
    )


def main() -> None:
    """CLI entry point for cluster bootstrap commands."""
    parser = argparse.ArgumentParser(
        prog="kubestrap.cli.bootstrap",
        description="Bootstrap a Kubernetes cluster from a topology file.",
    )
    parser.add_argument(
        "--verbose", action="store_true", default=False, help="Debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap_parser = subparsers.add_parser(
        "bootstrap", help="Provision, certify, install and network the cluster."
    )
    _add_topology(bootstrap_parser)
    _add_decommission(bootstrap_parser)
    bootstrap_parser.add_argument(
        "--control-plane-endpoint",
        default=None,
        help="API address clients use (default: load balancer, else first controller).",
    )
    bootstrap_parser.set_defaults(func=_run_bootstrap)

    routes_parser = subparsers.add_parser(
        "routes", help="Re-run pod subnet discovery and route installation."
    )
    _add_topology(routes_parser)
    routes_parser.set_defaults(func=_run_routes)

    smoke_parser = subparsers.add_parser(
        "smoke", help="Create, verify and delete an nginx deployment."
    )
    _add_topology(smoke_parser)
    smoke_parser.add_argument("--image", default="nginx", help="Container image.")
    smoke_parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Seconds to wait for the deployment to become available.",
    )
    smoke_parser.set_defaults(func=_run_smoke)

    plan_parser = subparsers.add_parser(
        "plan", help="Show provider changes without applying them."
    )
    _add_topology(plan_parser)
    _add_decommission(plan_parser)
    plan_parser.set_defaults(func=_run_plan)

    status_parser = subparsers.add_parser(
        "status", help="Show the persisted run journal and node records."
    )
    _add_topology(status_parser)
    status_parser.set_defaults(func=_run_status)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = KubestrapSettings()

    try:
        asyncio.run(args.func(args, settings))
    except ProvisioningError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        for rec in exc.result.ready_nodes:
            print(f"  ready:  {rec.node_id} {rec.private_ip}", file=sys.stderr)
        for rec in exc.result.failed_nodes:
            print(f"  failed: {rec.node_id} ({rec.error})", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
