"""
nodewright/utils/ignition.py

Reads the worker boot (ignition) specification that the cluster renders into
MachineConfigs, and exposes what Windows nodes need from it:
  - kubelet service arguments (only cloud-provider and cloud-config apply to Windows),
  - embedded files (data URLs),
  - the kubelet CA trust anchors from the ControllerConfig.

Usage:
    boot = await IgnitionBootConfig.load(cluster)
    args = await boot.get_service_args()
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import unquote_to_bytes

from nodewright.deployment.interfaces import ClusterClient, Manifest
from nodewright.models.nodeconfig import BootFile
from nodewright.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

KUBELET_UNIT_NAME = "kubelet.service"
CLOUD_CONFIG_OPTION = "cloud-config"
CLOUD_PROVIDER_OPTION = "cloud-provider"
RENDERED_WORKER_PREFIX = "rendered-worker-"
CLOUD_CONFIG_PATH = "/etc/kubernetes/cloud.conf"

MACHINECONFIG_KIND = "machineconfigs.machineconfiguration.openshift.io"
CONTROLLERCONFIG_KIND = "controllerconfigs.machineconfiguration.openshift.io"

WINDOWS_KUBELET_ARGS = (CLOUD_PROVIDER_OPTION, CLOUD_CONFIG_OPTION)


def decode_data_url(url: str) -> bytes:
    """
    Decode an RFC 2397 data URL ("data:[<mediatype>][;base64],<data>").

    Raises:
        ConfigurationError: If `url` is not a data URL.
    """
    if not url.startswith("data:") or "," not in url:
        raise ConfigurationError(f"not a data URL: {url[:32]!r}")
    header, _, payload = url[len("data:") :].partition(",")
    if header.endswith(";base64"):
        return base64.b64decode(payload)
    return unquote_to_bytes(payload)


def parse_kubelet_args(unit_contents: str) -> Dict[str, str]:
    """
    Extract the Windows-relevant `--key=value` arguments from a kubelet systemd unit's
    ExecStart command, which spans lines joined by trailing backslashes.

    Raises:
        ConfigurationError: If the unit has no ExecStart.
    """
    _, sep, exec_start = unit_contents.partition("ExecStart=")
    if not sep:
        raise ConfigurationError("unit missing ExecStart")

    command = exec_start.split("\n\n", 1)[0]
    arguments = [arg.strip() for arg in command.split("\\\n")[1:]]

    parsed = dict(
        arg[2:].split("=", 1) if arg.startswith("--") else arg.split("=", 1)
        for arg in arguments
        if "=" in arg
    )
    return {k: v for k, v in parsed.items() if k in WINDOWS_KUBELET_ARGS}


def get_latest_rendered_worker(machine_configs: List[Manifest]) -> Manifest:
    """
    Return the newest rendered worker MachineConfig carrying a non-empty config.

    Raises:
        ConfigurationError: If there is none.
    """
    newest_first = sorted(
        machine_configs,
        key=lambda mc: mc.get("metadata", {}).get("creationTimestamp", ""),
        reverse=True,
    )
    for mc in newest_first:
        name = mc.get("metadata", {}).get("name", "")
        if name.startswith(RENDERED_WORKER_PREFIX) and mc.get("spec", {}).get("config"):
            return mc
    raise ConfigurationError("rendered worker MachineConfig not found")


class IgnitionBootConfig:
    """
    Parsed worker ignition.

    Args:
        config: The ignition config document (from a MachineConfig's spec.config).
        kubelet_ca_data: Trust anchors for the kubelet CA.
        vsphere_in_tree: Override the cloud provider arguments for in-tree vSphere storage.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        kubelet_ca_data: bytes,
        vsphere_in_tree: bool = False,
    ) -> None:
        self.config = config
        self.kubelet_ca_data = kubelet_ca_data
        self.vsphere_in_tree = vsphere_in_tree

    @classmethod
    async def load(
        cls, cluster: ClusterClient, vsphere_in_tree: bool = False
    ) -> "IgnitionBootConfig":
        """
        Fetch the latest rendered worker MachineConfig and the kubelet CA from the
        ControllerConfig.

        Raises:
            ConfigurationError: If either is missing.
        """
        machine_configs = await cluster.list(MACHINECONFIG_KIND)
        rendered = get_latest_rendered_worker(machine_configs)
        config = rendered["spec"]["config"]
        if isinstance(config, str):
            config = json.loads(config)
        logger.debug(
            "Parsed MachineConfig %s using ignition version %s",
            rendered["metadata"]["name"],
            config.get("ignition", {}).get("version", "unknown"),
        )

        controller_configs = await cluster.list(CONTROLLERCONFIG_KIND)
        ca_data: Optional[str] = next(
            (
                cc["spec"]["kubeAPIServerServingCAData"]
                for cc in controller_configs
                if cc.get("spec", {}).get("kubeAPIServerServingCAData")
            ),
            None,
        )
        if not ca_data:
            raise ConfigurationError("cannot find kubelet-ca")

        return cls(config, base64.b64decode(ca_data), vsphere_in_tree=vsphere_in_tree)

    async def get_service_args(self) -> Dict[str, str]:
        """
        Raises:
            ConfigurationError: If the ignition has no kubelet unit.
        """
        units = self.config.get("systemd", {}).get("units", []) or []
        contents = next(
            (u.get("contents") for u in units if u.get("name") == KUBELET_UNIT_NAME),
            None,
        )
        if not contents:
            raise ConfigurationError("ignition missing kubelet systemd unit file")

        args = parse_kubelet_args(contents)
        if self.vsphere_in_tree:
            args[CLOUD_PROVIDER_OPTION] = "vsphere"
            args[CLOUD_CONFIG_OPTION] = CLOUD_CONFIG_PATH
        return args

    async def get_files(self) -> List[BootFile]:
        files = self.config.get("storage", {}).get("files", []) or []
        return [
            BootFile(
                path=f["path"],
                contents=(f.get("contents") or {}).get("source") or "",
            )
            for f in files
        ]

    async def get_trust_anchor_data(self) -> bytes:
        return self.kubelet_ca_data
