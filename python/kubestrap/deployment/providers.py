"""
kubestrap/deployment/providers.py

The provisioning interface consumed by the Resource Provisioner:
  - ResourceProvider: abstract create/update/destroy/observe over ResourceSpecs.
  - TerraformProvider: drives a Terraform root module through targeted
    applies and destroys, observing state with 'terraform show -json'.

The Terraform root module is expected to declare one `for_each` resource
block per resource kind (see TERRAFORM_BLOCKS), keyed by resource name and
fed from `var.resources`, and to copy every declared property into a
'kubestrap:<property>' tag so observed properties can be compared with the
desired ones.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from kubestrap.models.resources import ResourceKind, ResourceSpec, ResourceState
from kubestrap.models.terraform import StateResource, TerraformBackendRef
from kubestrap.utils.terraform import (
    apply_terraform,
    destroy_terraform,
    init_terraform,
    read_terraform_state,
)

logger = logging.getLogger(__name__)


class ResourceProvider(ABC):
    """Abstract interface to the cloud provider's resource APIs."""

    async def prepare(self, desired: List[ResourceSpec]) -> None:
        """Called once per run with the full desired-state document."""

    @abstractmethod
    async def observe(self) -> List[ResourceState]:
        """Return every resource the provider currently manages for the cluster."""

    @abstractmethod
    async def create(self, spec: ResourceSpec) -> ResourceState:
        """Create one resource and return its observed state."""

    @abstractmethod
    async def update(self, spec: ResourceSpec, current: ResourceState) -> ResourceState:
        """Converge one existing resource to `spec` in place."""

    @abstractmethod
    async def destroy(self, current: ResourceState) -> None:
        """Remove one resource."""


# kind -> (terraform resource type, block name)
TERRAFORM_BLOCKS: Dict[ResourceKind, Tuple[str, str]] = {
    ResourceKind.network: ("aws_vpc", "cluster"),
    ResourceKind.subnet: ("aws_subnet", "cluster"),
    ResourceKind.gateway: ("aws_internet_gateway", "cluster"),
    ResourceKind.route_table: ("aws_route_table", "cluster"),
    ResourceKind.security_group: ("aws_security_group", "cluster"),
    ResourceKind.firewall_rule: ("aws_vpc_security_group_ingress_rule", "cluster"),
    ResourceKind.iam_role: ("aws_iam_role", "cluster"),
    ResourceKind.instance: ("aws_instance", "nodes"),
    ResourceKind.load_balancer: ("aws_lb", "api"),
}

PROPERTY_TAG_PREFIX = "kubestrap:"

# Provider-assigned values copied into ResourceState.attributes.
_ATTRIBUTE_KEYS = ("private_ip", "public_ip", "dns_name", "arn")


def terraform_address(kind: ResourceKind, name: str) -> str:
    """Resource address used with '-target', e.g. aws_instance.nodes["worker-0"]."""
    tf_type, block = TERRAFORM_BLOCKS[kind]
    return f'{tf_type}.{block}["{name}"]'


def _kind_of(resource: StateResource) -> Optional[ResourceKind]:
    for kind, (tf_type, block) in TERRAFORM_BLOCKS.items():
        if resource.type == tf_type and resource.name == block:
            return kind
    return None


def state_from_terraform(resource: StateResource) -> Optional[ResourceState]:
    """Convert one Terraform state resource into a ResourceState (None if foreign)."""
    kind = _kind_of(resource)
    if kind is None or not isinstance(resource.index, str):
        return None
    values = resource.values
    tags: Dict[str, Any] = values.get("tags") or {}
    properties = {
        key[len(PROPERTY_TAG_PREFIX):]: value
        for key, value in tags.items()
        if key.startswith(PROPERTY_TAG_PREFIX)
    }
    attributes = {key: values[key] for key in _ATTRIBUTE_KEYS if values.get(key)}
    return ResourceState(
        kind=kind,
        name=resource.index,
        provider_id=str(values.get("id", "")),
        properties=properties,
        attributes=attributes,
    )


class TerraformProvider(ResourceProvider):
    """ResourceProvider backed by a Terraform root module.

    Terraform serializes access to its state with a lock, so concurrent
    calls from the provisioner are queued here instead of failing on it.
    """

    def __init__(
        self,
        ref: TerraformBackendRef,
        env: Optional[Dict[str, str]] = None,
        extra_variables: Optional[Dict[str, Any]] = None,
        retries: int = 3,
        retry_delay: float = 5.0,
    ) -> None:
        self.ref = ref
        self.env = env
        self.extra_variables = dict(extra_variables or {})
        self.retries = retries
        self.retry_delay = retry_delay
        self._document: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    def _variables(self) -> Dict[str, Any]:
        return {**self.extra_variables, "resources": self._document}

    async def prepare(self, desired: List[ResourceSpec]) -> None:
        document: Dict[str, Dict[str, Dict[str, Any]]] = {
            kind.value: {} for kind in ResourceKind
        }
        for spec in desired:
            document[spec.kind.value][spec.name] = dict(spec.properties)
        self._document = document
        if not self._initialized:
            await init_terraform(
                self.ref,
                env=self.env,
                retries=self.retries,
                retry_delay=self.retry_delay,
            )
            self._initialized = True

    async def observe(self) -> List[ResourceState]:
        state = await read_terraform_state(
            self.ref, env=self.env, retries=self.retries, retry_delay=self.retry_delay
        )
        observed = [state_from_terraform(res) for res in state.resources()]
        return [res for res in observed if res is not None]

    async def _observe_one(self, kind: ResourceKind, name: str) -> ResourceState:
        for res in await self.observe():
            if res.kind is kind and res.name == name:
                return res
        raise RuntimeError(
            f"Terraform applied {terraform_address(kind, name)} but it is not in state."
        )

    async def create(self, spec: ResourceSpec) -> ResourceState:
        return await self._apply(spec)

    async def update(self, spec: ResourceSpec, current: ResourceState) -> ResourceState:
        return await self._apply(spec)

    async def _apply(self, spec: ResourceSpec) -> ResourceState:
        address = terraform_address(spec.kind, spec.name)
        async with self._lock:
            logger.info("terraform apply -target=%s", address)
            await apply_terraform(
                self.ref,
                env=self.env,
                variables=self._variables(),
                targets=[address],
                retries=self.retries,
                retry_delay=self.retry_delay,
            )
            return await self._observe_one(spec.kind, spec.name)

    async def destroy(self, current: ResourceState) -> None:
        address = terraform_address(current.kind, current.name)
        async with self._lock:
            logger.info("terraform destroy -target=%s", address)
            await destroy_terraform(
                self.ref,
                env=self.env,
                variables=self._variables(),
                targets=[address],
                retries=self.retries,
                retry_delay=self.retry_delay,
            )
