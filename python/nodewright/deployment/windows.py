"""
nodewright/deployment/windows.py

SSHWindowsInstance drives one Windows instance over SSH. Every remote operation is a
PowerShell script sent with -EncodedCommand; file contents travel base64-encoded on
stdin. Host keys are fetched on first use when the SSHConfig does not carry any.

The configuration daemon (WICD) does the on-instance work: `bootstrap` starts the
kubelet and its dependencies, the `controller` service converges the remaining
services, and `cleanup` stops and removes everything it manages.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import ntpath
from typing import Dict, List, Optional, Tuple

from nodewright.models.instance import InstanceInfo
from nodewright.models.nodeconfig import Kubeconfig
from nodewright.models.ssh import SSHConfig
from nodewright.utils.async_command_runner import CommandError
from nodewright.utils.polling import PollProfile, QUICK_PROFILE, poll_until
from nodewright.utils.ssh import (
    SSH_DISCONNECT_CODE,
    run_powershell,
    ssh_get_server_key,
)

logger = logging.getLogger(__name__)

REMOTE_DIR = "C:\\Temp"
K8S_DIR = "C:\\k"
LOG_DIR = "C:\\var\\log"
WICD_LOG_DIR = LOG_DIR + "\\wicd"
CNI_DIR = K8S_DIR + "\\cni"
CONTAINERD_DIR = K8S_DIR + "\\containerd"
CONTAINERD_CONFIG_DIR = CONTAINERD_DIR + "\\registries"
TLS_DIR = K8S_DIR + "\\tls"

BOOTSTRAP_KUBECONFIG_PATH = K8S_DIR + "\\bootstrap-kubeconfig"
KUBELET_CONFIG_PATH = K8S_DIR + "\\kubelet.conf"
TRUSTED_CA_BUNDLE_PATH = REMOTE_DIR + "\\ca-bundle.crt"
WICD_PATH = K8S_DIR + "\\windows-instance-config-daemon.exe"
WICD_KUBECONFIG_PATH = K8S_DIR + "\\wicd-kubeconfig"
WICD_SERVICE_NAME = "windows-instance-config-daemon"
HNS_MODULE_PATH = REMOTE_DIR + "\\hns.psm1"

HNS_NETWORKS = (
    "OVNKubernetesHybridOverlayNetwork",
    "BaseOVNKubernetesHybridOverlayNetwork",
)

# Removal order matters: K8S_DIR goes last, except for the WICD files it keeps.
CREATED_DIRECTORIES = (
    REMOTE_DIR,
    CNI_DIR,
    LOG_DIR,
    CONTAINERD_DIR,
)


def split_path(path: str) -> Tuple[str, str]:
    """Split a Windows path into (directory, filename)."""
    directory, _, filename = path.rpartition("\\")
    return directory, filename


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def native_script(command: str) -> str:
    """Run a native executable and fail the script when it exits non-zero."""
    return f"{command}\nif ($LASTEXITCODE -ne 0) {{ exit $LASTEXITCODE }}"


def rm_dir_script(directory: str) -> str:
    return (
        f"if (Test-Path {_ps_quote(directory)}) "
        f"{{ Remove-Item -Recurse -Force {_ps_quote(directory)} }}"
    )


class SSHWindowsInstance:
    """
    WindowsInstance implementation over SSH.

    Args:
        instance: The instance being configured.
        ssh_config: SSH credentials; host_keys are filled in on first connect if empty.
        ca_bundle_configured: Pass the trusted CA bundle to the daemon (proxy clusters).
        reboot_profile: Polling bounds while waiting for a reboot to start and finish.
    """

    def __init__(
        self,
        instance: InstanceInfo,
        ssh_config: SSHConfig,
        *,
        ca_bundle_configured: bool = False,
        reboot_profile: PollProfile = QUICK_PROFILE,
    ) -> None:
        self.instance = instance
        self.ssh_config = ssh_config
        self.ca_bundle_configured = ca_bundle_configured
        self.reboot_profile = reboot_profile

    def get_address(self) -> str:
        return self.instance.ipv4_address

    async def _ensure_host_keys(self) -> None:
        if not self.ssh_config.host_keys:
            keys = await ssh_get_server_key(self.ssh_config)
            self.ssh_config = self.ssh_config.model_copy(update={"host_keys": keys})
            logger.info("Trusted host keys of %s on first use", self.instance.address)

    async def run(
        self,
        script: str,
        *,
        input_data: Optional[str] = None,
        successful_return_codes: Optional[List[int]] = None,
    ) -> str:
        """Run a PowerShell script on the instance and return its stdout."""
        await self._ensure_host_keys()
        out = await run_powershell(
            self.ssh_config,
            "$ErrorActionPreference = 'Stop'\n" + script,
            input_data=input_data,
            successful_return_codes=successful_return_codes,
        )
        logger.debug("Ran script on %s, output: %s", self.instance.address, out)
        return out

    async def _remote_sha256(self, path: str) -> Optional[str]:
        out = await self.run(
            f"if (Test-Path {_ps_quote(path)}) "
            f"{{ (Get-FileHash -Algorithm SHA256 {_ps_quote(path)}).Hash }}"
        )
        return out.strip().lower() or None

    async def _write_file(self, contents: bytes, remote_path: str) -> None:
        directory, _ = split_path(remote_path)
        script = (
            f"New-Item -ItemType Directory -Force -Path {_ps_quote(directory)} | Out-Null\n"
            "$data = [Convert]::FromBase64String([Console]::In.ReadToEnd().Trim())\n"
            f"[IO.File]::WriteAllBytes({_ps_quote(remote_path)}, $data)"
        )
        await self.run(script, input_data=base64.b64encode(contents).decode("ascii"))

    async def ensure_file_content(
        self, contents: bytes, filename: str, remote_dir: str
    ) -> None:
        remote_path = f"{remote_dir}\\{ntpath.basename(filename)}"
        checksum = hashlib.sha256(contents).hexdigest()
        if await self._remote_sha256(remote_path) == checksum:
            logger.debug("%s already has the expected content", remote_path)
            return
        logger.debug("Copying %s to %s", filename, self.instance.address)
        await self._write_file(contents, remote_path)

    async def replace_dir(self, files: Dict[str, bytes], remote_dir: str) -> None:
        logger.debug(
            "Publishing %d files to %s on %s", len(files), remote_dir, self.instance.address
        )
        await self.run(
            rm_dir_script(remote_dir)
            + f"\nNew-Item -ItemType Directory -Force -Path {_ps_quote(remote_dir)} | Out-Null"
        )
        for rel_path, contents in sorted(files.items()):
            await self._write_file(contents, remote_dir + "\\" + rel_path.replace("/", "\\"))

    async def _ensure_wicd_kubeconfig(self, kubeconfig: Kubeconfig) -> None:
        directory, filename = split_path(WICD_KUBECONFIG_PATH)
        await self.ensure_file_content(
            kubeconfig.to_json().encode("utf-8"), filename, directory
        )

    async def _remove_wicd_service(self) -> None:
        await self.run(
            f"$svc = Get-Service -Name {WICD_SERVICE_NAME} -ErrorAction SilentlyContinue\n"
            "if ($null -ne $svc) {\n"
            f"  Stop-Service -Force -Name {WICD_SERVICE_NAME}\n"
            f"  sc.exe delete {WICD_SERVICE_NAME} | Out-Null\n"
            "}"
        )

    async def run_cleanup(self, namespace: str, kubeconfig: Kubeconfig) -> None:
        await self._remove_wicd_service()
        await self._ensure_wicd_kubeconfig(kubeconfig)
        await self.run(
            native_script(
                f"& {_ps_quote(WICD_PATH)} cleanup --kubeconfig {_ps_quote(WICD_KUBECONFIG_PATH)} "
                f"--namespace {_ps_quote(namespace)}"
            )
        )

    async def bootstrap(
        self, desired_version: str, namespace: str, kubeconfig: Kubeconfig
    ) -> None:
        logger.info("Bootstrapping %s", self.instance.address)
        # stop anything left running so a failed configuration never looks Ready
        await self.run_cleanup(namespace, kubeconfig)
        await self.run(
            native_script(
                f"& {_ps_quote(WICD_PATH)} bootstrap --desired-version {_ps_quote(desired_version)} "
                f"--kubeconfig {_ps_quote(WICD_KUBECONFIG_PATH)} --namespace {_ps_quote(namespace)}"
            )
        )

    async def configure_sidecar(self, namespace: str, kubeconfig: Kubeconfig) -> None:
        await self._ensure_wicd_kubeconfig(kubeconfig)
        service_args = (
            f"controller --windows-service --log-dir {WICD_LOG_DIR} "
            f"--kubeconfig {WICD_KUBECONFIG_PATH} --namespace {namespace}"
        )
        if self.ca_bundle_configured:
            service_args += f" --ca-bundle {TRUSTED_CA_BUNDLE_PATH}"
        bin_path = f'"{WICD_PATH}" {service_args}'
        await self.run(
            f"$svc = Get-Service -Name {WICD_SERVICE_NAME} -ErrorAction SilentlyContinue\n"
            "if ($null -eq $svc) {\n"
            f"  sc.exe create {WICD_SERVICE_NAME} binPath= {_ps_quote(bin_path)} start= auto | Out-Null\n"
            # restart after 10s, 30s, 60s, then every 2 minutes; reset the count after 5 minutes
            f"  sc.exe failure {WICD_SERVICE_NAME} reset= 300 "
            "actions= restart/10000/restart/30000/restart/60000/restart/120000 | Out-Null\n"
            "}\n"
            f"Start-Service -Name {WICD_SERVICE_NAME}"
        )
        logger.info("Configured %s on %s", WICD_SERVICE_NAME, self.instance.address)

    async def _reachable(self) -> bool:
        try:
            await self.run("exit 0")
        except CommandError:
            return False
        return True

    async def reboot_and_reconnect(self) -> None:
        logger.info("Rebooting %s", self.instance.address)
        await self.run(
            "Restart-Computer -Force", successful_return_codes=[0, SSH_DISCONNECT_CODE]
        )

        async def _unreachable() -> Optional[bool]:
            return True if not await self._reachable() else None

        async def _back_online() -> Optional[bool]:
            return True if await self._reachable() else None

        await poll_until(
            _unreachable, self.reboot_profile, f"{self.instance.address} to go down"
        )
        await poll_until(
            _back_online, self.reboot_profile, f"{self.instance.address} to come back"
        )
        logger.debug("Successful reboot of %s", self.instance.address)

    async def remove_files_and_networks(self) -> None:
        networks = ",".join(_ps_quote(n) for n in HNS_NETWORKS)
        await self.run(
            f"if (Test-Path {_ps_quote(HNS_MODULE_PATH)}) {{\n"
            f"  Import-Module -DisableNameChecking {_ps_quote(HNS_MODULE_PATH)}\n"
            f"  Get-HnsNetwork | Where-Object {{ @({networks}) -contains $_.Name }} | Remove-HnsNetwork\n"
            "}"
        )
        for directory in CREATED_DIRECTORIES:
            await self.run(rm_dir_script(directory))
        # keep the daemon binary and kubeconfig so a failed removal can be retried
        await self.run(
            f"if (Test-Path {_ps_quote(K8S_DIR)}) {{ Get-ChildItem {_ps_quote(K8S_DIR)} -Recurse "
            f"-Exclude {_ps_quote(split_path(WICD_PATH)[1])},{_ps_quote(split_path(WICD_KUBECONFIG_PATH)[1])} "
            "| Remove-Item -Force -Recurse }"
        )
        try:
            await self.run(rm_dir_script(K8S_DIR))
        except CommandError as exc:
            logger.debug("Unable to remove %s on %s: %s", K8S_DIR, self.instance.address, exc)
