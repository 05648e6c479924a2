"""
nodewright/models/ssh.py

SSH connection settings for reaching a Windows instance.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a remote host.
    If host_keys is empty => no known keys => keys are fetched on first use (TOFU).
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val
