"""
nodewright/utils/ssh.py

Provides SSH helpers for Windows instances, keeping private keys and known_hosts in
ephemeral files under /dev/shm:
  - ssh_get_server_key: minimal handshake to retrieve the server host key (TOFU).
  - run_ssh_command: strict host-key-checking SSH (expects host_keys in SSHConfig).
  - run_powershell: run a PowerShell script on the instance through run_ssh_command.
  - public_key_hash: the node annotation value binding a node to its SSH key.

run_ssh_command accepts 'successful_return_codes' for the cases where a non-zero code is
expected (e.g. the connection dropping during a reboot).
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import List, Optional

import aiofiles
import aiofiles.ospath
from cryptography.hazmat.primitives import serialization

from nodewright.models.ssh import SSHConfig
from nodewright.utils.async_command_runner import CommandError, run_command
from nodewright.utils.ephemeral_file import ephemeral_manager

SSH_DISCONNECT_CODE = 255


def _ssh_base_command(
    cfg: SSHConfig, pk_path: str, kh_path: str, strict: str, timeout: int
) -> List[str]:
    return [
        "ssh",
        "-p",
        str(cfg.port),
        "-i",
        pk_path,
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={timeout}",
        "-o",
        f"StrictHostKeyChecking={strict}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
        f"{cfg.user}@{cfg.hostname}",
    ]


async def _write_private_key(path: str, private_key: str) -> None:
    async with aiofiles.open(path, "wb") as fpk:
        await fpk.write(private_key.encode("utf-8"))
    os.chmod(path, 0o600)


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    connect_timeout: int = 10,
) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to retrieve the server's host key lines (TOFU).

    Args:
      cfg: SSHConfig with user, hostname, port, private_key.
      retries: times to retry if error
      retry_delay: seconds between retries
      connect_timeout: ssh ConnectTimeout in seconds

    Returns:
      A list of lines from ephemeral known_hosts (the server's keys).

    Raises:
      CommandError: if handshake fails or no host keys found
    """
    async with ephemeral_manager("ssh_known_hosts", prefix="sshkh-") as kh_path:
        async with ephemeral_manager("ssh_idkey", prefix="sshpk-") as pk_path:
            await _write_private_key(pk_path, cfg.private_key)

            ssh_cmd = _ssh_base_command(
                cfg, pk_path, kh_path, "accept-new", connect_timeout
            ) + ["exit"]
            await run_command(ssh_cmd, retries=retries, retry_delay=retry_delay)

            lines: List[str] = []
            if await aiofiles.ospath.exists(kh_path):
                async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                    content = await fkh.readlines()
                    lines = [ln.strip() for ln in content if ln.strip()]

            if not lines:
                raise CommandError(
                    "ssh_get_server_key found no lines; server key not retrieved."
                )

            return lines


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: str,
    *,
    sensitive: bool = True,
    input_data: Optional[str] = None,
    retries: int = 0,
    retry_delay: float = 1.0,
    successful_return_codes: Optional[List[int]] = None,
    timeout: Optional[float] = None,
    connect_timeout: int = 10,
) -> str:
    """
    Run a command in strict host-key-checking mode, requiring host_keys in ssh_config.
    The command is passed to the remote shell as a single string.

    Args:
      ssh_config: Must have user, hostname, port, private_key, host_keys
      remote_command: The command line to run remotely
      sensitive: If True, hides details on error
      input_data: Optional data written to the remote command's stdin
      retries: how many times to retry (defaults to a single attempt)
      retry_delay: seconds between retries
      successful_return_codes: Additional exit codes considered "non-error."
      timeout: Overall deadline for the command, in seconds
      connect_timeout: ssh ConnectTimeout in seconds

    Returns:
      captured stdout from the remote command

    Raises:
      CommandError: if host_keys empty or the command fails (unless the code
                    is in `successful_return_codes`).
    """
    if not ssh_config.host_keys:
        raise CommandError("run_ssh_command requires non-empty host_keys.")

    async with ephemeral_manager("ssh_known_hosts", prefix="sshkh-") as kh_path:
        async with ephemeral_manager("ssh_idkey", prefix="sshpk-") as pk_path:
            async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
                for line in ssh_config.host_keys:
                    await fkh.write(line + "\n")

            await _write_private_key(pk_path, ssh_config.private_key)

            ssh_cmd = _ssh_base_command(
                ssh_config, pk_path, kh_path, "yes", connect_timeout
            )
            ssh_cmd.append(remote_command)

            return await run_command(
                ssh_cmd,
                sensitive=sensitive,
                input_data=input_data,
                retries=retries,
                retry_delay=retry_delay,
                successful_return_codes=successful_return_codes or [0],
                timeout=timeout,
            )


def encode_powershell(script: str) -> str:
    """Encode a script for `powershell.exe -EncodedCommand` (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def powershell_command(script: str) -> str:
    return (
        "powershell.exe -NonInteractive -ExecutionPolicy Bypass "
        f"-EncodedCommand {encode_powershell(script)}"
    )


async def run_powershell(
    ssh_config: SSHConfig,
    script: str,
    *,
    input_data: Optional[str] = None,
    sensitive: bool = True,
    successful_return_codes: Optional[List[int]] = None,
    timeout: Optional[float] = None,
) -> str:
    """
    Run a PowerShell script on a Windows instance. The script is sent encoded so no
    quoting survives the remote shell; bulk data goes through stdin (`input_data`),
    readable in the script with [Console]::In.ReadToEnd().
    """
    return await run_ssh_command(
        ssh_config,
        powershell_command(script),
        sensitive=sensitive,
        input_data=input_data,
        successful_return_codes=successful_return_codes,
        timeout=timeout,
    )


def public_key_hash(private_key_pem: str) -> str:
    """
    Return the sha256 hex digest of the OpenSSH public key line ("ssh-rsa AAAA...")
    derived from `private_key_pem`. Nodes are annotated with this value so a node can be
    tied to the key used to configure it.

    Raises:
        ValueError: If the private key cannot be loaded.
    """
    data = private_key_pem.encode("utf-8")
    if b"OPENSSH PRIVATE KEY" in data:
        key = serialization.load_ssh_private_key(data, password=None)
    else:
        key = serialization.load_pem_private_key(data, password=None)
    public_line = key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    )
    return hashlib.sha256(public_line.strip()).hexdigest()
