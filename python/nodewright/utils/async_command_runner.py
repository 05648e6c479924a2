"""
nodewright/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic. It backs both the
kubectl-based cluster client and the SSH transport to Windows instances.

An optional `error_parser` callback can turn known stderr patterns (e.g. kubectl
"NotFound") into a short message, and `successful_return_codes` lists the exit codes
that are not errors (defaults to [0]).

Usage example:
    from nodewright.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["kubectl", "get", "nodes", "-o", "json"], retries=0)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import os
from typing import Callable, Dict, List, Optional

from nodewright.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured stderr, empty when the command was sensitive.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given and returns a message for the captured
    stderr, that short message is raised instead of the generic one.

    When `sensitive=True`, the command line, stdout, and stderr are omitted from the
    error message (they may carry tokens or key material).

    Args:
        command (List[str]): The command and arguments to execute.
        sensitive (bool): If True, hides command details in the raised error.
        env (Optional[Dict[str, str]]): Additional environment variables.
        cwd (Optional[str]): Working directory for the command.
        input_data (Optional[str]): If provided, written to stdin.
        successful_return_codes (Optional[List[int]]): Non-error exit codes. Defaults to [0].
        retries (int): Total attempts; 0 or 1 means a single attempt. Defaults to 3.
        retry_delay (float): Delay in seconds between retries. Defaults to 1.0.
        timeout (Optional[float]): Per-attempt deadline in seconds. The child is killed
            when it expires or when the caller is cancelled.
        error_parser (Optional[Callable[[str], Optional[str]]]): stderr -> short message.

    Returns:
        str: The captured stdout of the command on success.

    Raises:
        CommandError: If the command fails after all retries, or times out.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input_data.encode() if input_data else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(f"Command timed out after {timeout}s") from exc
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode, stderr_str)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                "" if sensitive else stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
