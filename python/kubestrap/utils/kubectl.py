"""
kubestrap/utils/kubectl.py

Read-only control-plane queries issued with 'kubectl' on a controller node
(or locally with a kubeconfig). Output is requested as JSON and parsed here,
so callers only deal with plain mappings.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

CommandFunc = Callable[[List[str]], Awaitable[str]]


def kubectl_args(*args: str, kubeconfig: Optional[str] = None) -> List[str]:
    """Build a kubectl argument list, optionally pinned to a kubeconfig file."""
    base = ["kubectl"]
    if kubeconfig:
        base += ["--kubeconfig", kubeconfig]
    return base + list(args)


def _node_entry(item: Dict[str, Any]) -> Tuple[str, str]:
    """Return (internal_ip, pod_cidr) from one node JSON item."""
    spec = item.get("spec", {})
    status = item.get("status", {})
    internal_ip = next(
        (
            addr.get("address", "")
            for addr in status.get("addresses", [])
            if addr.get("type") == "InternalIP"
        ),
        "",
    )
    return internal_ip, spec.get("podCIDR", "") or ""


def parse_pod_cidrs(raw_json: str) -> Dict[str, str]:
    """
    Map node InternalIP -> assigned pod CIDR from 'kubectl get nodes -o json'.

    Nodes without an InternalIP are skipped; nodes whose CIDR has not been
    allocated yet map to an empty string.
    """
    items = json.loads(raw_json).get("items", [])
    return {
        ip: cidr
        for item in items
        for ip, cidr in [_node_entry(item)]
        if ip
    }


async def get_pod_cidrs(
    run: CommandFunc, kubeconfig: Optional[str] = None
) -> Dict[str, str]:
    """Query the node list through `run` and map InternalIP -> pod CIDR."""
    raw = await run(kubectl_args("get", "nodes", "-o", "json", kubeconfig=kubeconfig))
    return parse_pod_cidrs(raw)
