"""
nodewright/utils/k8s.py

Provides KubectlClient, a cluster client implemented on top of the 'kubectl' binary.
Every call captures JSON output; a "NotFound" error on `get` is reported as None.

Node helpers built on any ClusterClient live here as well:
  - get_node / list_windows_nodes
  - set_unschedulable: cordon or uncordon (merge patch of spec.unschedulable)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from nodewright.deployment.interfaces import ClusterClient, Manifest, PatchType
from nodewright.models.k8s import Node
from nodewright.utils.async_command_runner import CommandError, run_command
from nodewright.utils.metadata import WINDOWS_OS_LABEL

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "NotFound"


def _parse_kubectl_error(stderr: str) -> Optional[str]:
    if "NotFound" in stderr:
        return NOT_FOUND_MESSAGE
    return None


class KubectlClient:
    """
    ClusterClient backed by 'kubectl'. Uses the in-cluster service account or the
    current kubeconfig, whichever kubectl would pick.

    Args:
        kubectl_path: The kubectl executable.
        retries: Attempts for read calls (get/list). Writes are attempted once.
    """

    def __init__(self, kubectl_path: str = "kubectl", retries: int = 3) -> None:
        self.kubectl_path = kubectl_path
        self.retries = retries

    def _base(self, namespace: Optional[str]) -> List[str]:
        cmd = [self.kubectl_path]
        if namespace:
            cmd += ["-n", namespace]
        return cmd

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Manifest]:
        cmd = self._base(namespace) + ["get", kind, name, "-o", "json"]
        try:
            raw_json = await run_command(
                cmd,
                sensitive=False,
                retries=self.retries,
                error_parser=_parse_kubectl_error,
            )
        except CommandError as ex:
            if str(ex) == NOT_FOUND_MESSAGE:
                return None
            raise
        result: Manifest = json.loads(raw_json)
        return result

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Manifest]:
        cmd = self._base(namespace) + ["get", kind, "-o", "json"]
        if label_selector:
            cmd += ["-l", label_selector]
        raw_json = await run_command(cmd, sensitive=False, retries=self.retries)
        items: List[Manifest] = json.loads(raw_json).get("items", [])
        return items

    async def patch(
        self,
        kind: str,
        name: str,
        patch: Union[List[Dict[str, Any]], Dict[str, Any]],
        patch_type: PatchType = "json",
        namespace: Optional[str] = None,
    ) -> Manifest:
        cmd = self._base(namespace) + [
            "patch",
            kind,
            name,
            "--type",
            patch_type,
            "-p",
            json.dumps(patch),
            "-o",
            "json",
        ]
        raw_json = await run_command(cmd, sensitive=False, retries=0)
        result: Manifest = json.loads(raw_json)
        return result

    async def drain(self, node_name: str) -> None:
        cmd = self._base(None) + [
            "drain",
            node_name,
            "--ignore-daemonsets",
            "--delete-emptydir-data",
            "--force",
        ]
        await run_command(cmd, sensitive=False, retries=0)


async def get_node(cluster: ClusterClient, name: str) -> Optional[Node]:
    manifest = await cluster.get("node", name)
    return Node.from_manifest(manifest) if manifest is not None else None


async def list_windows_nodes(cluster: ClusterClient) -> List[Node]:
    items = await cluster.list("node", label_selector=WINDOWS_OS_LABEL)
    return [Node.from_manifest(item) for item in items]


async def set_unschedulable(
    cluster: ClusterClient, node_name: str, unschedulable: bool
) -> Node:
    """Cordon (True) or uncordon (False) a node."""
    manifest = await cluster.patch(
        "node",
        node_name,
        {"spec": {"unschedulable": unschedulable}},
        patch_type="merge",
    )
    logger.debug(
        "Node %s %s", node_name, "cordoned" if unschedulable else "uncordoned"
    )
    return Node.from_manifest(manifest)
