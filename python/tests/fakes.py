"""
In-memory stand-ins for the provider, the remote nodes and time, shared by
the test modules.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from kubestrap.deployment.providers import ResourceProvider
from kubestrap.deployment.tasks import NodeExecutor
from kubestrap.models.node import NodeRecord, NodeStatus
from kubestrap.models.resources import ResourceKind, ResourceSpec, ResourceState
from kubestrap.models.topology import ClusterTopology, NodeRole, load_topology
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.ssh import sha256_text

LB_DNS_NAME = "kubestrap-api.elb.example.com"


def make_topology(**overrides: object) -> ClusterTopology:
    data: Dict[str, object] = {
        "cluster_name": "demo",
        "allowed_ingress_cidr": "198.51.100.0/24",
    }
    data.update(overrides)
    return load_topology(data)


def make_record(
    node_id: str,
    private_ip: Optional[str],
    public_ip: Optional[str] = None,
    status: NodeStatus = NodeStatus.ready,
) -> NodeRecord:
    role_name = node_id.rsplit("-", 1)[0]
    return NodeRecord(
        node_id=node_id,
        role=NodeRole(role_name),
        private_ip=private_ip,
        public_ip=public_ip,
        provider_id=f"i-{node_id}",
        status=status,
    )


class FakeSleep:
    """Records requested delays and advances a shared FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.now += delay
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeProvider(ResourceProvider):
    """Provider keeping resources in a dict.

    Args:
        fail: Resource addresses ('instance/worker-1') whose create/update
            always raises; 'prepare' makes `prepare` raise.
    """

    def __init__(self, fail: Sequence[str] = ()) -> None:
        self.resources: Dict[Tuple[ResourceKind, str], ResourceState] = {}
        self.fail: Set[str] = set(fail)
        self.calls: List[Tuple[str, str]] = []
        self.prepared: List[ResourceSpec] = []
        self._next_id = 0

    async def prepare(self, desired: List[ResourceSpec]) -> None:
        self.calls.append(("prepare", ""))
        if "prepare" in self.fail:
            raise failing("terraform init: backend unreachable")
        self.prepared = list(desired)

    async def observe(self) -> List[ResourceState]:
        self.calls.append(("observe", ""))
        return list(self.resources.values())

    def _attributes(self, spec: ResourceSpec) -> Dict[str, str]:
        if spec.kind is ResourceKind.instance:
            last_octet = spec.properties["private_ip"].rsplit(".", 1)[1]
            return {
                "private_ip": spec.properties["private_ip"],
                "public_ip": f"203.0.113.{last_octet}",
            }
        if spec.kind is ResourceKind.load_balancer:
            return {"dns_name": LB_DNS_NAME}
        return {}

    def _store(self, spec: ResourceSpec, provider_id: str) -> ResourceState:
        state = ResourceState(
            kind=spec.kind,
            name=spec.name,
            provider_id=provider_id,
            properties=dict(spec.properties),
            attributes=self._attributes(spec),
        )
        self.resources[spec.key] = state
        return state

    async def create(self, spec: ResourceSpec) -> ResourceState:
        self.calls.append(("create", spec.address))
        await asyncio.sleep(0)
        if spec.address in self.fail:
            raise RuntimeError(f"capacity error for {spec.address}")
        self._next_id += 1
        return self._store(spec, f"id-{self._next_id}")

    async def update(self, spec: ResourceSpec, current: ResourceState) -> ResourceState:
        self.calls.append(("update", spec.address))
        if spec.address in self.fail:
            raise RuntimeError(f"capacity error for {spec.address}")
        return self._store(spec, current.provider_id)

    async def destroy(self, current: ResourceState) -> None:
        self.calls.append(("destroy", current.address))
        self.resources.pop(current.key, None)

    def mutating_calls(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "update", "destroy")]


Response = Union[str, Exception, Callable[[NodeRecord, List[str]], str]]


class FakeExecutor(NodeExecutor):
    """Executor backed by a per-node file dict and scripted command output.

    Commands succeed with empty output unless a rule added with `respond`
    matches; the first rule whose pattern is a substring of the joined
    command wins.
    """

    def __init__(self) -> None:
        self.files: Dict[str, Dict[str, str]] = {}
        self.modes: Dict[str, Dict[str, str]] = {}
        self.commands: List[Tuple[str, List[str]]] = []
        self.uploads: List[Tuple[str, str]] = []
        self.rules: List[Tuple[str, Optional[str], Response]] = []

    def respond(
        self, pattern: str, response: Response, node_id: Optional[str] = None
    ) -> None:
        self.rules.append((pattern, node_id, response))

    def ran(self, node_id: Optional[str] = None, pattern: str = "") -> List[str]:
        return [
            " ".join(cmd)
            for nid, cmd in self.commands
            if (node_id is None or nid == node_id) and pattern in " ".join(cmd)
        ]

    async def run(
        self,
        node: NodeRecord,
        command: List[str],
        *,
        sensitive: bool = True,
        retries: Optional[int] = None,
    ) -> str:
        self.commands.append((node.node_id, list(command)))
        await asyncio.sleep(0)
        if command[:2] == ["sudo", "chmod"]:
            mode, path = command[2], command[3]
            self.modes.setdefault(node.node_id, {})[path] = mode.lstrip("0") or "0"
        joined = " ".join(command)
        for pattern, node_id, response in self.rules:
            if pattern not in joined or node_id not in (None, node.node_id):
                continue
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(node, command)
            return response
        return ""

    async def put_file(
        self, node: NodeRecord, content: str, path: str, mode: str = "0644"
    ) -> None:
        self.uploads.append((node.node_id, path))
        self.files.setdefault(node.node_id, {})[path] = content
        self.modes.setdefault(node.node_id, {})[path] = mode.lstrip("0") or "0"

    async def file_digest(self, node: NodeRecord, path: str) -> Optional[str]:
        content = self.files.get(node.node_id, {}).get(path)
        return None if content is None else sha256_text(content)

    async def file_mode(self, node: NodeRecord, path: str) -> Optional[str]:
        return self.modes.get(node.node_id, {}).get(path)


def failing(message: str = "exit status 1") -> CommandError:
    return CommandError(message, return_code=1)


class FakeSubnetSource:
    """Pod subnet source returning a scripted sequence of answers."""

    def __init__(self, *answers: Dict[str, str]) -> None:
        self.answers = list(answers)
        self.calls = 0

    async def __call__(self) -> Dict[str, str]:
        index = min(self.calls, len(self.answers) - 1)
        self.calls += 1
        return dict(self.answers[index])
