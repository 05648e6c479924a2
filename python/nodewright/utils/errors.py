"""
nodewright/utils/errors.py

Exception types shared across nodewright:
  - ConfigurationError: bad inputs (CIDR, merge arguments, missing secret fields). Never retried.
  - CacheInitError: the startup cache could not be populated.
  - PhaseError: a required step of a node lifecycle operation failed.

Polling timeouts live next to the poller (nodewright.utils.polling.PollTimeoutError),
and command failures next to the runner (nodewright.utils.async_command_runner.CommandError).
"""

from __future__ import annotations

from typing import Optional


class ConfigurationError(ValueError):
    """Raised when an input is malformed or a required field is missing."""


class CacheInitError(RuntimeError):
    """Raised when the process-wide node configuration cache cannot be built."""


class PhaseError(RuntimeError):
    """A required phase of Configure/Deconfigure/SafeReboot failed.

    Attributes:
        phase (str): Name of the failing phase, e.g. "Bootstrap".
        name (str): Node name, or the instance address when no node is known yet.
    """

    def __init__(self, phase: str, name: str, cause: Optional[BaseException] = None):
        message = f"{phase} failed for {name}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.phase = phase
        self.name = name
