"""
Shared fixtures: a synthetic build reference, installer media and an
in-memory HostBackend.
"""

from __future__ import annotations

import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from autodbpatch.domain.builds import BuildTable, BuildVersion
from autodbpatch.domain.errors import AuthError, DownloadError
from autodbpatch.hotfix.backend import CommandResult, InstallOutcome
from autodbpatch.hotfix.models import Component

REFERENCE = {
    "LastUpdated": "2024-01-10T00:00:00+00:00",
    "Data": [
        {"Version": "13.0.1601", "Name": "2016", "SP": "RTM", "Retired": True},
        {"Version": "13.0.2149", "CU": "CU1", "KBList": ["3164674"], "Retired": True},
        {"Version": "13.0.4001", "SP": "SP1", "KBList": ["3182545"]},
        {"Version": "13.0.4411", "CU": "CU1", "KBList": ["3208177"]},
        {"Version": "13.0.4422", "CU": "CU2", "KBList": ["4013106"]},
        {"Version": "13.0.4435", "CU": "CU3", "KBList": ["4019916"]},
        {"Version": "13.0.4446", "CU": "CU4", "KBList": ["4024305"]},
        {"Version": "13.0.4451", "CU": "CU5", "KBList": ["4040714"]},
        {"Version": "13.0.4457", "CU": "CU6", "KBList": ["4037354"]},
        {"Version": "13.0.4466", "CU": "CU7", "KBList": ["4057119"]},
        {"Version": "13.0.5026", "SP": "SP2", "KBList": ["4052908"]},
        {"Version": "13.0.5149", "CU": "CU1", "KBList": ["4135048"]},
        {"Version": "13.0.5153", "CU": "CU2", "KBList": ["4340355"]},
        {"Version": "13.0.5161", "KBList": ["4293807"]},
        {"Version": "15.0.2000", "Name": "2019", "SP": "RTM"},
        {"Version": "15.0.4003", "CU": "CU1", "KBList": ["4527376"]},
        {"Version": "15.0.4013", "CU": "CU2", "KBList": ["4536075"]},
        {"Version": "15.0.4023", "CU": "CU3", "KBList": ["4538853"]},
        {"Version": "15.0.4033", "CU": "CU4", "KBList": ["4548597"]},
    ],
}

MUTATING_CALLS = {
    "establish_remote_channel",
    "configure_credssp",
    "run_installer",
    "restart_host",
    "download_update",
    "copy_file_to_host",
}

_KB_IN_PATH = re.compile(r"KB(\d+)", re.IGNORECASE)


def make_component(computer: str, version: str, instance: str = "MSSQLSERVER", arch: str = "x64") -> Component:
    build = BuildVersion.parse(version)
    return Component(
        computer_name=computer,
        instance_name=instance,
        major_version=build.major,
        architecture=arch,
        current_version=build,
    )


@pytest.fixture
def table() -> BuildTable:
    return BuildTable.from_payload(REFERENCE)


@pytest.fixture
def media_dir(tmp_path, table) -> Path:
    """Every installer of the synthetic reference, in nested folders."""
    root = tmp_path / "media"
    for record in table.all_records():
        for kb in record.kb_list:
            folder = root / record.version.family
            folder.mkdir(parents=True, exist_ok=True)
            (folder / f"SQLServer-KB{kb}-x64.exe").write_bytes(b"MZ")
    return root


class FakeChannel:
    def __init__(self, computer_name: str, protocol: str):
        self.computer_name = computer_name
        self.protocol = protocol
        self.closed = False

    def execute(self, command: str) -> CommandResult:
        return CommandResult(success=True, exit_code=0)

    def close(self) -> None:
        self.closed = True


class FakeBackend:
    """
    In-memory HostBackend.

    Attributes are plain dicts/sets configured by each test:
        inventory: host -> components, or an exception to raise
        pending_reboot: host -> bool, or an exception to raise
        failing_protocols: host -> lower-case protocols that fail to authenticate
        credssp_fixes: hosts where configuring CredSSP makes CredSSP work
        exit_codes: (host, kb) -> installer exit code
        unreachable: hosts that never come back after a restart
        failing_downloads: KBs whose download fails

    host_spans records, per host, the monotonic time of the first and last
    host-touching call.
    """

    def __init__(self, inventory: dict | None = None):
        self.inventory = inventory or {}
        self.pending_reboot: dict = {}
        self.failing_protocols: dict[str, set[str]] = {}
        self.credssp_fixes: set[str] = set()
        self.exit_codes: dict[tuple[str, str], int] = {}
        self.unreachable: set[str] = set()
        self.failing_downloads: set[str] = set()
        self.install_delay = 0.0
        self.calls: list[tuple] = []
        self.channels: list[FakeChannel] = []
        self.active_installs = 0
        self.max_active_installs = 0
        self.host_spans: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def _touch(self, computer_name: str) -> None:
        now = time.monotonic()
        with self._lock:
            span = self.host_spans.setdefault(computer_name, [now, now])
            span[1] = now

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def collect_installed_components(self, computer_name, credential):
        self._record("collect_installed_components", computer_name)
        self._touch(computer_name)
        value = self.inventory.get(computer_name, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    def check_pending_reboot(self, computer_name, credential):
        self._record("check_pending_reboot", computer_name)
        self._touch(computer_name)
        value = self.pending_reboot.get(computer_name, False)
        if isinstance(value, Exception):
            raise value
        return value

    def establish_remote_channel(self, computer_name, credential, protocol):
        self._record("establish_remote_channel", computer_name, protocol)
        self._touch(computer_name)
        if protocol.lower() in self.failing_protocols.get(computer_name, set()):
            raise AuthError(f"{protocol} rejected by {computer_name}")
        channel = FakeChannel(computer_name, protocol)
        with self._lock:
            self.channels.append(channel)
        return channel

    def configure_credssp(self, computer_name, credential):
        self._record("configure_credssp", computer_name)
        self._touch(computer_name)
        if computer_name in self.credssp_fixes:
            self.failing_protocols.get(computer_name, set()).discard("credssp")

    def run_installer(self, channel, installer_path, arguments):
        match = _KB_IN_PATH.search(installer_path)
        kb = match.group(1) if match else None
        self._record("run_installer", channel.computer_name, kb)
        self._touch(channel.computer_name)
        with self._lock:
            self.active_installs += 1
            self.max_active_installs = max(self.max_active_installs, self.active_installs)
        try:
            if self.install_delay:
                time.sleep(self.install_delay)
        finally:
            with self._lock:
                self.active_installs -= 1
            self._touch(channel.computer_name)
        code = self.exit_codes.get((channel.computer_name, kb), 0)
        if code in (0, 3010):
            return InstallOutcome(succeeded=True, restart_required=code == 3010, exit_code=code)
        return InstallOutcome(succeeded=False, notes=f"exit code {code}", exit_code=code)

    def restart_host(self, computer_name, credential):
        self._record("restart_host", computer_name)
        self._touch(computer_name)
        self.pending_reboot[computer_name] = False

    def wait_until_reachable(self, computer_name, timeout):
        self._record("wait_until_reachable", computer_name)
        self._touch(computer_name)
        return computer_name not in self.unreachable

    def download_update(self, kb, architecture, destination_dir):
        self._record("download_update", kb, architecture)
        time.sleep(0.02)
        if kb in self.failing_downloads:
            raise DownloadError(f"KB{kb} not in catalog")
        path = Path(destination_dir) / f"SQLServer-KB{kb}-{architecture}.exe"
        path.write_bytes(b"MZ")
        return path

    def copy_file_to_host(self, computer_name, credential, local_path, remote_dir):
        self._record("copy_file_to_host", computer_name, Path(local_path).name)
        self._touch(computer_name)
        return f"{remote_dir}\\{Path(local_path).name}"


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 2, 1, tzinfo=timezone.utc)

