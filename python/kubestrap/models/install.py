"""
kubestrap/models/install.py

Defines Pydantic models for the Service Installer:
 - task specs (UploadFile, FetchBinary, InstallPackages, CommandTask,
   ServiceUnit, EnableService) combined into the TaskSpec union
 - ProbeSpec / ProbePolicy
 - RolePlan / InstallationPlan
 - RoleState and its allowed transitions
 - RoleReport / InstallReport
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Annotated

from kubestrap.errors import InstallationError
from kubestrap.models.topology import NodeRole


# ----------------------------------------------------------------------
# 1) Tasks
# ----------------------------------------------------------------------


class UploadFile(BaseModel):
    """Place `content` at `path` with the given mode (certificates, configs)."""

    kind: Literal["upload"] = "upload"
    path: str
    content: str
    mode: str = "0644"
    sensitive: bool = False

    @property
    def label(self) -> str:
        return f"upload {self.path}"


class FetchBinary(BaseModel):
    """Download a release binary (or archive members) into `dest_dir`.

    A version marker holding the source URL makes the fetch idempotent.
    """

    kind: Literal["fetch"] = "fetch"
    name: str
    url: str
    dest_dir: str = "/usr/local/bin"
    archive_members: List[str] = Field(default_factory=list)
    strip_components: int = 1

    @property
    def label(self) -> str:
        return f"fetch {self.name}"

    @property
    def marker_path(self) -> str:
        return f"/var/lib/kubestrap/versions/{self.name}"


class InstallPackages(BaseModel):
    kind: Literal["packages"] = "packages"
    packages: List[str]

    @property
    def label(self) -> str:
        return "packages " + " ".join(self.packages)


class CommandTask(BaseModel):
    """Run `apply` unless `check` already succeeds on the node."""

    kind: Literal["command"] = "command"
    name: str
    check: List[str]
    apply: List[str]

    @property
    def label(self) -> str:
        return self.name


class ServiceUnit(BaseModel):
    """A rendered systemd unit definition."""

    kind: Literal["unit"] = "unit"
    unit_name: str
    content: str

    @property
    def label(self) -> str:
        return f"unit {self.unit_name}"

    @property
    def path(self) -> str:
        return f"/etc/systemd/system/{self.unit_name}.service"


class EnableService(BaseModel):
    """Enable and start a unit.

    The unit is restarted when it is not active, when one of the `watches`
    paths changed during this run, or when the watched files differ from
    the fingerprint recorded on the node after its last successful restart.
    An already-active, unchanged service is left alone.
    """

    kind: Literal["service"] = "service"
    unit_name: str
    watches: List[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return f"service {self.unit_name}"

    @property
    def fingerprint_path(self) -> str:
        return f"/var/lib/kubestrap/services/{self.unit_name}"


TaskSpec = Annotated[
    Union[
        UploadFile,
        FetchBinary,
        InstallPackages,
        CommandTask,
        ServiceUnit,
        EnableService,
    ],
    Field(discriminator="kind"),
]


# ----------------------------------------------------------------------
# 2) Probes
# ----------------------------------------------------------------------


class ProbePolicy(BaseModel):
    """Bounded retry policy of a readiness probe.

    Attributes:
        retries: Total attempts (not just failures).
        delay: Seconds between attempts.
        backoff: Multiplier applied to the delay after every attempt.
    """

    retries: int = Field(default=5, ge=1)
    delay: float = Field(default=5.0, ge=0.0)
    backoff: float = Field(default=1.0, ge=1.0)


class ProbeSpec(BaseModel):
    """A readiness check for a role.

    Attributes:
        name: Label used in reports and errors.
        kind: 'tcp' (port listening), 'http' (GET returns 2xx) or
            'command' (remote command exits 0, optionally printing `expect`).
        scope: Run against every member ('each') or only the first one.
        port / path / scheme: For tcp and http probes.
        command / expect: For command probes.
        expect_count: For command probes, how many lines must contain `expect`.
        run_on: Run a command probe on the first member of this role instead
            (e.g. query the API server from a controller for worker readiness).
    """

    name: str
    kind: Literal["tcp", "http", "command"]
    scope: Literal["each", "first"] = "each"
    port: Optional[int] = None
    path: str = "/healthz"
    scheme: Literal["http", "https"] = "https"
    command: List[str] = Field(default_factory=list)
    expect: Optional[str] = None
    expect_count: Optional[int] = None
    run_on: Optional[NodeRole] = None

    @model_validator(mode="after")
    def check_fields(self) -> ProbeSpec:
        if self.kind in ("tcp", "http") and self.port is None:
            raise ValueError(f"{self.kind} probe '{self.name}' requires a port")
        if self.kind == "command" and not self.command:
            raise ValueError(f"command probe '{self.name}' requires a command")
        return self


# ----------------------------------------------------------------------
# 3) Plan
# ----------------------------------------------------------------------


class RolePlan(BaseModel):
    """Tasks and readiness probes of one role.

    Attributes:
        role: The role installed by this step.
        depends_on: Roles that must be `verified` before any task starts.
        tasks: node_id -> ordered tasks for that node.
        probes: Readiness checks gating `started -> verified`.
    """

    role: NodeRole
    depends_on: List[NodeRole] = Field(default_factory=list)
    tasks: Dict[str, List[TaskSpec]] = Field(default_factory=dict)
    probes: List[ProbeSpec] = Field(default_factory=list)


class InstallationPlan(BaseModel):
    """Ordered role steps; a role may only depend on roles listed before it,
    which keeps the dependency graph acyclic by construction."""

    roles: List[RolePlan]

    @model_validator(mode="after")
    def check_order(self) -> InstallationPlan:
        seen: List[NodeRole] = []
        for step in self.roles:
            if step.role in seen:
                raise ValueError(f"role '{step.role.value}' planned twice")
            unknown = [d.value for d in step.depends_on if d not in seen]
            if unknown:
                raise ValueError(
                    f"role '{step.role.value}' depends on roles not planned before it: "
                    + ", ".join(unknown)
                )
            seen.append(step.role)
        return self

    def step(self, role: NodeRole) -> RolePlan:
        for s in self.roles:
            if s.role is role:
                return s
        raise KeyError(f"role '{role.value}' is not part of the plan")


# ----------------------------------------------------------------------
# 4) State machine
# ----------------------------------------------------------------------


class RoleState(str, Enum):
    not_started = "not-started"
    installing = "installing"
    started = "started"
    verified = "verified"
    failed = "failed"


# not-started -> started is taken when every task already matches the node.
ROLE_TRANSITIONS: Dict[RoleState, FrozenSet[RoleState]] = {
    RoleState.not_started: frozenset({RoleState.installing, RoleState.started}),
    RoleState.installing: frozenset({RoleState.started, RoleState.failed}),
    RoleState.started: frozenset({RoleState.verified, RoleState.failed}),
    RoleState.verified: frozenset(),
    RoleState.failed: frozenset(),
}


class RoleReport(BaseModel):
    role: NodeRole
    state: RoleState = RoleState.not_started
    history: List[RoleState] = Field(default_factory=lambda: [RoleState.not_started])
    changed_tasks: List[str] = Field(default_factory=list)
    probe_attempts: int = 0
    error: Optional[str] = None
    failed_step: Optional[str] = None
    failed_node: Optional[str] = None
    blocked_by: List[NodeRole] = Field(default_factory=list)

    def transition(self, new_state: RoleState) -> None:
        if new_state not in ROLE_TRANSITIONS[self.state]:
            raise ValueError(
                f"illegal transition for role '{self.role.value}': "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


class InstallReport(BaseModel):
    roles: Dict[NodeRole, RoleReport] = Field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return bool(self.roles) and all(
            r.state is RoleState.verified for r in self.roles.values()
        )

    def first_failure(self) -> Optional[RoleReport]:
        for report in self.roles.values():
            if report.state is RoleState.failed:
                return report
        return None

    def raise_for_status(self) -> None:
        failed = self.first_failure()
        if failed is not None:
            raise InstallationError(
                role=failed.role.value,
                step=failed.failed_step or "unknown",
                cause=failed.error or "unknown error",
                node_id=failed.failed_node,
            )
