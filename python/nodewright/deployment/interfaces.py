"""
nodewright/deployment/interfaces.py

The capabilities the orchestrator consumes. Concrete implementations:
  - ClusterClient: nodewright.utils.k8s.KubectlClient
  - WindowsInstance: nodewright.deployment.windows.SSHWindowsInstance
  - BootConfig: nodewright.utils.ignition.IgnitionBootConfig
Tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from typing_extensions import Literal, Protocol

from nodewright.models.nodeconfig import BootFile, Kubeconfig

Manifest = Dict[str, Any]
PatchType = Literal["json", "merge"]


class ClusterClient(Protocol):
    """Read and patch cluster objects by kind, name and namespace."""

    async def get(
        self, kind: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Manifest]:
        """Return the object, or None when it does not exist."""
        ...

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Manifest]: ...

    async def patch(
        self,
        kind: str,
        name: str,
        patch: Union[List[Dict[str, Any]], Dict[str, Any]],
        patch_type: PatchType = "json",
        namespace: Optional[str] = None,
    ) -> Manifest:
        """Apply a JSON (RFC 6902) or merge (RFC 7386) patch and return the result."""
        ...

    async def drain(self, node_name: str) -> None:
        """Evict all pods, tolerating DaemonSet-managed and emptyDir pods."""
        ...


class WindowsInstance(Protocol):
    """Remote operations on one Windows instance."""

    def get_address(self) -> str: ...

    async def ensure_file_content(
        self, contents: bytes, filename: str, remote_dir: str
    ) -> None:
        """Write the file only if it is missing or its contents differ."""
        ...

    async def replace_dir(self, files: Dict[str, bytes], remote_dir: str) -> None:
        """Make `remote_dir` hold exactly `files` (relative path -> contents)."""
        ...

    async def bootstrap(
        self, desired_version: str, namespace: str, kubeconfig: Kubeconfig
    ) -> None: ...

    async def configure_sidecar(self, namespace: str, kubeconfig: Kubeconfig) -> None: ...

    async def run_cleanup(self, namespace: str, kubeconfig: Kubeconfig) -> None: ...

    async def reboot_and_reconnect(self) -> None: ...

    async def remove_files_and_networks(self) -> None: ...


class BootConfig(Protocol):
    """Values recovered from the boot (ignition) specification of worker nodes."""

    async def get_service_args(self) -> Dict[str, str]: ...

    async def get_files(self) -> List[BootFile]: ...

    async def get_trust_anchor_data(self) -> bytes: ...
