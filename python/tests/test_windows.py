"""
tests/test_windows.py

SSHWindowsInstance with the PowerShell transport replaced by a recorder.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
from typing import List, Optional, Tuple

import pytest

from fakes import FAST_PROFILE
from nodewright.deployment import windows as windows_module
from nodewright.deployment.windows import CONTAINERD_CONFIG_DIR, SSHWindowsInstance
from nodewright.models.instance import InstanceInfo
from nodewright.models.ssh import SSHConfig
from nodewright.utils.async_command_runner import CommandError


class Recorder:
    def __init__(self, outputs: Optional[list] = None) -> None:
        self.scripts: List[Tuple[str, Optional[str]]] = []
        self.outputs = list(outputs or [])

    async def __call__(self, ssh_config, script, *, input_data=None, successful_return_codes=None):
        self.scripts.append((script, input_data))
        if self.outputs:
            out = self.outputs.pop(0)
            if isinstance(out, Exception):
                raise out
            return out
        return ""


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    rec = Recorder()
    monkeypatch.setattr(windows_module, "run_powershell", rec)
    return rec


def make_instance() -> SSHWindowsInstance:
    return SSHWindowsInstance(
        InstanceInfo(address="10.0.0.5", ipv4_address="10.0.0.5"),
        SSHConfig(
            user="Administrator",
            hostname="10.0.0.5",
            private_key="key",
            host_keys=["10.0.0.5 ssh-ed25519 AAAA"],
        ),
        reboot_profile=FAST_PROFILE,
    )


def test_ensure_file_content_writes_when_missing(recorder: Recorder) -> None:
    asyncio.run(make_instance().ensure_file_content(b"data", "kubelet.conf", "C:\\k"))

    assert len(recorder.scripts) == 2
    script, stdin = recorder.scripts[1]
    assert "'C:\\k\\kubelet.conf'" in script
    assert base64.b64decode(stdin) == b"data"


def test_ensure_file_content_skips_identical_file(recorder: Recorder) -> None:
    recorder.outputs = [hashlib.sha256(b"data").hexdigest().upper()]

    asyncio.run(make_instance().ensure_file_content(b"data", "kubelet.conf", "C:\\k"))

    assert len(recorder.scripts) == 1


def test_replace_dir_converts_relative_paths(recorder: Recorder) -> None:
    files = {"quay.io/org/app/hosts.toml": b"server"}

    asyncio.run(make_instance().replace_dir(files, CONTAINERD_CONFIG_DIR))

    assert "Remove-Item -Recurse -Force" in recorder.scripts[0][0]
    assert "'C:\\k\\containerd\\registries\\quay.io\\org\\app\\hosts.toml'" in recorder.scripts[1][0]


def test_reboot_waits_for_down_then_up(recorder: Recorder) -> None:
    # restart, still up, down, back up
    recorder.outputs = ["", "", CommandError("connection refused"), ""]

    asyncio.run(make_instance().reboot_and_reconnect())

    assert "Restart-Computer -Force" in recorder.scripts[0][0]
    assert len(recorder.scripts) == 4
