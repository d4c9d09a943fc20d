"""
Collaborator interfaces consumed by the hotfix engine.

The engine never talks to hosts directly. Everything that touches a remote
machine goes through a HostBackend, and commands run over a Channel
returned by the backend. infrastructure.psremote ships the WinRM
implementation; tests use an in-memory fake.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from autodbpatch.hotfix.models import Component, HostCredential


@dataclass
class CommandResult:
    """Outcome of one command run over a channel."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


@runtime_checkable
class Channel(Protocol):
    """An established remote (or local) execution channel to one host."""

    computer_name: str
    protocol: str

    def execute(self, command: str) -> CommandResult: ...

    def close(self) -> None: ...


@dataclass
class InstallOutcome:
    """What an installer run reported."""
    succeeded: bool
    notes: str = ""
    restart_required: bool = False
    exit_code: int | None = None


class HostBackend(Protocol):
    """
    External collaborators of the patch engine.

    Each method raises the matching error from autodbpatch.domain.errors
    (HostConnectionError, AuthError, RestartError, DownloadError, CopyError).
    """

    def collect_installed_components(
        self, computer_name: str, credential: HostCredential | None
    ) -> list[Component]: ...

    def check_pending_reboot(
        self, computer_name: str, credential: HostCredential | None
    ) -> bool: ...

    def establish_remote_channel(
        self, computer_name: str, credential: HostCredential | None, protocol: str
    ) -> Channel: ...

    def configure_credssp(
        self, computer_name: str, credential: HostCredential | None
    ) -> None: ...

    def run_installer(
        self, channel: Channel, installer_path: str, arguments: str
    ) -> InstallOutcome: ...

    def restart_host(
        self, computer_name: str, credential: HostCredential | None
    ) -> None: ...

    def wait_until_reachable(self, computer_name: str, timeout: float) -> bool: ...

    def download_update(
        self, kb: str, architecture: str, destination_dir: Path
    ) -> Path: ...

    def copy_file_to_host(
        self,
        computer_name: str,
        credential: HostCredential | None,
        local_path: Path,
        remote_dir: str,
    ) -> str: ...
