"""
kubestrap/utils/terraform/__init__.py

Convenient import interface for the Terraform command layer.
"""

from kubestrap.utils.terraform.commands import (
    init_terraform,
    apply_terraform,
    destroy_terraform,
    read_terraform_state,
    maybe_tfvars,
)

__all__ = [
    "init_terraform",
    "apply_terraform",
    "destroy_terraform",
    "read_terraform_state",
    "maybe_tfvars",
]
