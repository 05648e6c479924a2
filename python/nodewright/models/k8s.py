"""
nodewright/models/k8s.py

Pydantic views over the Kubernetes objects nodewright reads: Node, and the
address list used to match a node to the instance it runs on.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NodeAddress(BaseModel):
    type: str
    address: str

    class Config:
        frozen = True


class Node(BaseModel):
    """The subset of a Node manifest the orchestrator works with."""

    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    addresses: List[NodeAddress] = Field(default_factory=list)
    unschedulable: bool = False

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "Node":
        """Build a Node from the JSON returned by the API server."""
        meta = manifest.get("metadata", {})
        spec = manifest.get("spec", {})
        status = manifest.get("status", {})
        return cls(
            name=meta["name"],
            labels=meta.get("labels") or {},
            annotations=meta.get("annotations") or {},
            addresses=[NodeAddress(**a) for a in status.get("addresses") or []],
            unschedulable=bool(spec.get("unschedulable", False)),
        )

    def has_address(self, address: str) -> bool:
        return any(a.address == address for a in self.addresses)


def find_by_address(address: str, nodes: List[Node]) -> Optional[Node]:
    """
    Return the single node reporting `address`, or None when no node, or more than one
    node, reports it.
    """
    matches = [n for n in nodes if n.has_address(address)]
    return matches[0] if len(matches) == 1 else None
