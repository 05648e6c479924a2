"""
nodewright/models/instance.py

InstanceInfo describes one Windows VM being turned into (or kept as) a worker node.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from nodewright.models.k8s import Node
from nodewright.utils.metadata import VERSION_ANNOTATION


class InstanceInfo(BaseModel):
    """
    Attributes:
        address: The address used to reach the instance (DNS name or IP).
        ipv4_address: The IPv4 address the node reports; matched during node discovery.
        username: The user to log in as.
        node: The associated Node, once known.
    """

    address: str
    ipv4_address: str
    username: str = Field(default="Administrator")
    node: Optional[Node] = None

    @field_validator("address", "ipv4_address")
    @classmethod
    def validate_address(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("address must be a non-empty string")
        return val

    def up_to_date(self, version: str) -> bool:
        """True when the node was configured by `version`."""
        if self.node is None:
            return False
        return self.node.annotations.get(VERSION_ANNOTATION) == version

    def upgrade_required(self, version: str) -> bool:
        """True when the node was configured by a different version than `version`."""
        if self.node is None:
            return False
        configured = self.node.annotations.get(VERSION_ANNOTATION)
        return configured is not None and configured != version
