"""
WinRM host backend.

Implements every host-touching operation of the patch engine with
PowerShell over pywinrm, SMB admin shares and the Microsoft Update Catalog.
"""

from __future__ import annotations

import json
import logging
import shutil
import socket
import threading
import time
from collections.abc import Callable
from pathlib import Path, PureWindowsPath

from autodbpatch.domain.builds import BuildVersion
from autodbpatch.domain.errors import (
    AuthError,
    CopyError,
    HostConnectionError,
    RestartError,
)
from autodbpatch.hotfix.backend import Channel, InstallOutcome
from autodbpatch.hotfix.models import Component, HostCredential
from autodbpatch.infrastructure.catalog import CatalogClient
from autodbpatch.infrastructure.config_loader import HotfixTimeouts
from autodbpatch.infrastructure.psremote.channel import WinRMChannel
from autodbpatch.infrastructure.psremote.client import (
    ConnectionConfig,
    PSRemoteClient,
    is_localhost,
    transport_for,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_REBOOT_REQUIRED = 3010

# Engine instances from both registry views; PatchLevel is the installed build
INVENTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$result = @()
$views = @(
    @{ Root = 'HKLM:\SOFTWARE\Microsoft\Microsoft SQL Server'; Arch = 'x64' },
    @{ Root = 'HKLM:\SOFTWARE\WOW6432Node\Microsoft\Microsoft SQL Server'; Arch = 'x86' }
)
if (-not [Environment]::Is64BitOperatingSystem) { $views = @(@{ Root = $views[0].Root; Arch = 'x86' }) }
foreach ($view in $views) {
    $names = Get-ItemProperty -Path "$($view.Root)\Instance Names\SQL" -ErrorAction SilentlyContinue
    if (-not $names) { continue }
    foreach ($prop in $names.PSObject.Properties) {
        if ($prop.Name -like 'PS*') { continue }
        $setup = Get-ItemProperty -Path "$($view.Root)\$($prop.Value)\Setup" -ErrorAction SilentlyContinue
        if (-not $setup -or -not $setup.PatchLevel) { continue }
        $result += [pscustomobject]@{
            InstanceName = $prop.Name
            Version      = $setup.PatchLevel
            Architecture = $view.Arch
        }
    }
}
ConvertTo-Json -InputObject @($result) -Compress
"""

PENDING_REBOOT_SCRIPT = r"""
$pending = $false
if (Test-Path 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending') { $pending = $true }
if (Test-Path 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired') { $pending = $true }
$sm = Get-ItemProperty -Path 'HKLM:\SYSTEM\CurrentControlSet\Control\Session Manager' -Name PendingFileRenameOperations -ErrorAction SilentlyContinue
if ($sm -and $sm.PendingFileRenameOperations) { $pending = $true }
if ($pending) { 'True' } else { 'False' }
"""

INSTALL_SCRIPT = r"""
$process = Start-Process -FilePath '{path}' -ArgumentList '{arguments}' -Wait -PassThru -NoNewWindow
exit $process.ExitCode
"""

CREDSSP_SCRIPT = "Enable-WSManCredSSP -Role Server -Force | Out-Null"
RESTART_SCRIPT = "shutdown.exe /r /t 5 /f /d p:2:17 /c 'AutoDBPatch SQL Server update'"


def _ps_quote(value: str) -> str:
    return value.replace("'", "''")


def admin_share_path(computer_name: str, remote_dir: str) -> Path:
    r"""C:\Windows\Temp on SQL01 -> \\SQL01\C$\Windows\Temp."""
    windows = PureWindowsPath(remote_dir)
    if not windows.drive or not windows.drive.endswith(":"):
        raise CopyError(f"Remote directory must be an absolute local path: {remote_dir}")
    rest = windows.relative_to(windows.anchor)
    return Path(f"\\\\{computer_name}\\{windows.drive[0]}$") / rest


class WinRMHostBackend:
    """
    HostBackend implementation over WinRM.

    Sessions outside the install channel (inventory, pending-reboot checks,
    restarts) use the protocol negotiated for the host once known, otherwise
    the configured one. CredSSP is only usable after the server role has been
    enabled, and Digest has no pywinrm transport, so until a protocol has been
    negotiated those two fall back to Default.

    Usage:
        backend = WinRMHostBackend(settings.timeouts, credential=credential, protocol=settings.protocol)
        service = HotfixService(backend, table, settings, credential)
    """

    def __init__(
        self,
        timeouts: HotfixTimeouts | None = None,
        catalog: CatalogClient | None = None,
        credential: HostCredential | None = None,
        sleep: Callable[[float], None] = time.sleep,
        protocol: str = "Default",
    ):
        self.timeouts = timeouts or HotfixTimeouts()
        self.catalog = catalog or CatalogClient(timeout=self.timeouts.download_timeout_seconds)
        self.credential = credential
        self.protocol = protocol
        self._sleep = sleep
        self._negotiated: dict[str, str] = {}
        self._lock = threading.Lock()

    def session_protocol(self, computer_name: str) -> str:
        """Protocol for sessions opened outside the install channel."""
        with self._lock:
            negotiated = self._negotiated.get(computer_name.lower())
        if negotiated:
            return negotiated
        if self.protocol.lower() == "credssp" or transport_for(self.protocol) is None:
            return "Default"
        return self.protocol

    def _client(
        self, computer_name: str, credential: HostCredential | None, protocol: str = "Default"
    ) -> PSRemoteClient:
        credential = credential or HostCredential()
        return PSRemoteClient(ConnectionConfig(
            hostname=computer_name,
            username=credential.username,
            password=credential.password,
            protocol=protocol,
            operation_timeout_sec=self.timeouts.operation_timeout_seconds,
        ))

    def _run(self, computer_name: str, credential: HostCredential | None, script: str) -> str:
        client = self._client(computer_name, credential, self.session_protocol(computer_name))
        try:
            result = client.run_ps(script)
        finally:
            client.close()
        if not result.success:
            raise HostConnectionError(
                f"{computer_name}: {result.error or result.stderr.strip() or f'exit code {result.return_code}'}"
            )
        return result.stdout

    def collect_installed_components(
        self, computer_name: str, credential: HostCredential | None
    ) -> list[Component]:
        """
        Raises:
            HostConnectionError: Host unreachable or inventory unreadable
        """
        output = self._run(computer_name, credential, INVENTORY_SCRIPT).strip()
        try:
            rows = json.loads(output or "[]")
        except json.JSONDecodeError as exc:
            raise HostConnectionError(f"{computer_name}: unreadable inventory output: {exc}") from exc
        if isinstance(rows, dict):
            rows = [rows]

        components = []
        for row in rows:
            try:
                version = BuildVersion.parse(str(row["Version"]))
            except (KeyError, ValueError):
                logger.warning("%s: skipping instance with unparsable version: %r", computer_name, row)
                continue
            components.append(Component(
                computer_name=computer_name,
                instance_name=row.get("InstanceName") or "MSSQLSERVER",
                major_version=version.major,
                architecture=row.get("Architecture") or "x64",
                current_version=version,
            ))
        logger.info("%s: found %d SQL Server instance(s)", computer_name, len(components))
        return components

    def check_pending_reboot(self, computer_name: str, credential: HostCredential | None) -> bool:
        output = self._run(computer_name, credential, PENDING_REBOOT_SCRIPT)
        return output.strip().lower().endswith("true")

    def establish_remote_channel(
        self, computer_name: str, credential: HostCredential | None, protocol: str
    ) -> Channel:
        """
        Raises:
            AuthError: The protocol could not open a session
        """
        client = self._client(computer_name, credential, protocol)
        if not client.connect():
            raise AuthError(f"{protocol} session to {computer_name} failed: " + "; ".join(client.attempts))
        with self._lock:
            self._negotiated[computer_name.lower()] = protocol
        return WinRMChannel(computer_name, protocol, client)

    def configure_credssp(self, computer_name: str, credential: HostCredential | None) -> None:
        logger.info("%s: enabling CredSSP server role", computer_name)
        self._run(computer_name, credential, CREDSSP_SCRIPT)

    def run_installer(self, channel: Channel, installer_path: str, arguments: str) -> InstallOutcome:
        script = INSTALL_SCRIPT.format(path=_ps_quote(installer_path), arguments=_ps_quote(arguments))
        result = channel.execute(script)
        code = result.exit_code

        if code == EXIT_SUCCESS:
            return InstallOutcome(succeeded=True, exit_code=code)
        if code == EXIT_REBOOT_REQUIRED:
            return InstallOutcome(
                succeeded=True,
                notes="Installer requested a restart (exit code 3010)",
                restart_required=True,
                exit_code=code,
            )
        detail = result.stderr.strip() or result.stdout.strip()
        notes = f"Installer exited with code {code}" if code is not None else "Installer did not run"
        if detail:
            notes += f": {detail[:500]}"
        return InstallOutcome(succeeded=False, notes=notes, exit_code=code)

    def restart_host(self, computer_name: str, credential: HostCredential | None) -> None:
        """
        Raises:
            RestartError: The restart command was rejected
        """
        try:
            self._run(computer_name, credential, RESTART_SCRIPT)
        except HostConnectionError as exc:
            raise RestartError(f"Restart of {computer_name} failed: {exc}") from exc

    def wait_until_reachable(self, computer_name: str, timeout: float) -> bool:
        """
        Wait for the host to go down and come back with WinRM listening.

        Returns False when the timeout elapses first.
        """
        poll = self.timeouts.reachability_poll_seconds
        started = time.monotonic()
        went_down = False

        while time.monotonic() - started < timeout:
            self._sleep(poll)
            if not self._port_open(computer_name):
                went_down = True
                continue
            # A host that never dropped off is accepted after a grace period
            if not went_down and time.monotonic() - started < 4 * poll:
                continue
            try:
                self._run(computer_name, self.credential, "'OK'")
            except HostConnectionError:
                continue
            return True
        return False

    @staticmethod
    def _port_open(computer_name: str, port: int = 5985) -> bool:
        try:
            with socket.create_connection((computer_name, port), timeout=5):
                return True
        except OSError:
            return False

    def download_update(self, kb: str, architecture: str, destination_dir: Path) -> Path:
        return self.catalog.download(kb, architecture, destination_dir)

    def copy_file_to_host(
        self,
        computer_name: str,
        credential: HostCredential | None,
        local_path: Path,
        remote_dir: str,
    ) -> str:
        """
        Copy an installer through the host's administrative share.

        Returns:
            Path of the copy as seen on the host

        Raises:
            CopyError: Share unreachable or copy failed
        """
        local_path = Path(local_path)
        remote_path = str(PureWindowsPath(remote_dir) / local_path.name)
        if is_localhost(computer_name):
            share_dir = Path(remote_dir)
        else:
            share_dir = admin_share_path(computer_name, remote_dir)
        target = share_dir / local_path.name

        try:
            if target.exists() and target.stat().st_size == local_path.stat().st_size:
                logger.debug("%s: %s already present", computer_name, remote_path)
                return remote_path
            share_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, target)
        except OSError as exc:
            raise CopyError(f"Copy of {local_path.name} to {computer_name} failed: {exc}") from exc

        logger.info("%s: copied %s to %s", computer_name, local_path.name, remote_path)
        return remote_path
