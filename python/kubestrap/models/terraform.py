"""
kubestrap/models/terraform.py

Defines Pydantic models related to Terraform, including:
 - TerraformBackendRef: the root module directory + workspace of a cluster.
 - TerraformState: a parsed 'terraform show -json' document, with a helper
   that flattens every managed resource (including child modules).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class TerraformBackendRef(BaseModel):
    """Root module directory + workspace used for one cluster.

    Attributes:
        root: Path of the Terraform root module.
        workspace: Workspace name (no dots/slashes/newlines).
    """

    root: str
    workspace: str = "default"

    @field_validator("root")
    @classmethod
    def validate_root(cls, value: str) -> str:
        if "\n" in value or not value.strip():
            raise ValueError("'root' must be a non-empty single-line path.")
        return value

    @field_validator("workspace")
    @classmethod
    def validate_workspace(cls, value: str) -> str:
        if any(x in value for x in [".", "/", "\n"]):
            raise ValueError("Dots/slash/newline not allowed in 'workspace'.")
        return value


class OutputValue(BaseModel):
    sensitive: bool
    value: Any
    type: Union[str, List[Any], None] = None


class StateResource(BaseModel):
    """One resource instance in 'terraform show -json' output."""

    address: str
    mode: str = "managed"
    type: str
    name: str
    index: Union[str, int, None] = None
    values: Dict[str, Any] = Field(default_factory=dict)


class Values(BaseModel):
    outputs: Dict[str, OutputValue] = Field(default_factory=dict)
    root_module: Dict[str, Any] = Field(default_factory=dict)


class TerraformState(BaseModel):
    """Represents a Terraform JSON state at a high level.

    An empty workspace renders without a 'values' block, so it is optional.
    """

    format_version: str
    terraform_version: Optional[str] = None
    values: Optional[Values] = None

    def resources(self) -> List[StateResource]:
        """Every managed resource, recursing into child modules."""
        if self.values is None:
            return []
        return _collect_resources(self.values.root_module)

    def is_empty(self) -> bool:
        return not self.resources()


def _collect_resources(module_data: Dict[str, Any]) -> List[StateResource]:
    resources = module_data.get("resources")
    own = [
        StateResource.model_validate(res)
        for res in (resources if isinstance(resources, list) else [])
        if isinstance(res, dict) and res.get("mode", "managed") == "managed"
    ]
    child_modules = module_data.get("child_modules")
    children = [
        res
        for child in (child_modules if isinstance(child_modules, list) else [])
        if isinstance(child, dict)
        for res in _collect_resources(child)
    ]
    return own + children
