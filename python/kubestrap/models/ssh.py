"""
kubestrap/models/ssh.py

SSH connection settings for remote execution on cluster nodes.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a node.
    If host_keys is empty => no known keys => must do TOFU or fail in strict mode.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None  # If None/empty => no known keys

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val

    def with_host_keys(self, host_keys: List[str]) -> SSHConfig:
        return self.model_copy(update={"host_keys": host_keys})
