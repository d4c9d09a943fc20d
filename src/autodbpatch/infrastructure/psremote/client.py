"""
PSRemote Client - pywinrm wrapper.

Opens a WinRM session with one requested authentication protocol, trying
HTTPS before HTTP. Localhost targets bypass WinRM and run PowerShell
directly.

Protocol to pywinrm transport:
    Default, Negotiate, NegotiateWithImplicitCredential -> ntlm
    Kerberos -> kerberos
    Credssp  -> credssp
    Basic    -> basic (HTTPS only)
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import tempfile
from dataclasses import dataclass, field
from enum import Enum

import winrm  # pywinrm

logger = logging.getLogger(__name__)

PROTOCOL_TRANSPORTS = {
    "default": "ntlm",
    "negotiate": "ntlm",
    "negotiatewithimplicitcredential": "ntlm",
    "kerberos": "kerberos",
    "credssp": "credssp",
    "basic": "basic",
}

_LOCALHOST_NAMES = {"localhost", "127.0.0.1", "::1", ".", "(local)"}


class Transport(Enum):
    """WinRM transport protocols."""

    HTTPS = "https"
    HTTP = "http"


@dataclass
class ConnectionConfig:
    """Configuration for PSRemote connection."""

    hostname: str
    username: str | None = None
    password: str | None = None
    protocol: str = "Default"
    port_http: int = 5985
    port_https: int = 5986
    timeout_seconds: int = 30
    operation_timeout_sec: int = 120
    verify_ssl: bool = False


@dataclass
class PSRemoteResult:
    """Result from PSRemote operation."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    return_code: int = -1
    transport_used: str = ""
    auth_used: str = ""
    error: str = ""
    attempts: list[str] = field(default_factory=list)


def is_localhost(hostname: str) -> bool:
    """Matches localhost, 127.0.0.1, ::1, "." and the local machine name."""
    name = hostname.lower().strip()
    if name in _LOCALHOST_NAMES:
        return True
    local_name = socket.gethostname().lower()
    return name in (local_name, local_name.split(".")[0])


def transport_for(protocol: str) -> str | None:
    return PROTOCOL_TRANSPORTS.get(protocol.lower())


class PSRemoteClient:
    """
    PSRemote client bound to one host and one authentication protocol.

    Usage:
        client = PSRemoteClient(ConnectionConfig("SQL01", user, password, protocol="Credssp"))
        if client.connect():
            result = client.run_ps("Get-Service MSSQLSERVER")
    """

    def __init__(self, config: ConnectionConfig) -> None:
        self.config = config
        self._session: winrm.Session | None = None
        self._working_transport: Transport | None = None
        self._is_localhost: bool = is_localhost(config.hostname)
        self.attempts: list[str] = []

    @property
    def is_local(self) -> bool:
        return self._is_localhost

    def connect(self) -> bool:
        """
        Establish the session. Returns True when connected.

        For localhost, returns True immediately (no PSRemoting needed).
        Failed attempts are recorded in self.attempts.
        """
        if self._is_localhost:
            logger.debug("Localhost mode: skipping PSRemoting for %s", self.config.hostname)
            return True

        auth = transport_for(self.config.protocol)
        if auth is None:
            self.attempts.append(f"protocol {self.config.protocol} is not supported by pywinrm")
            return False

        for transport in (Transport.HTTPS, Transport.HTTP):
            if transport is Transport.HTTP and auth == "basic":
                continue
            if self._try_connect(transport, auth):
                return True

        logger.debug("All connection attempts failed for %s", self.config.hostname)
        return False

    def _try_connect(self, transport: Transport, auth: str) -> bool:
        port = self.config.port_https if transport is Transport.HTTPS else self.config.port_http
        endpoint = f"{transport.value}://{self.config.hostname}:{port}/wsman"
        logger.debug("Trying: %s with %s", endpoint, auth)

        try:
            session = winrm.Session(
                target=endpoint,
                auth=(self.config.username or "", self.config.password or ""),
                transport=auth,
                server_cert_validation="validate" if self.config.verify_ssl else "ignore",
                operation_timeout_sec=self.config.operation_timeout_sec,
                read_timeout_sec=self.config.operation_timeout_sec + 10,
            )
            result = session.run_cmd("echo", ["OK"])
        except Exception as e:  # pywinrm surfaces transport errors from several libraries
            self.attempts.append(f"{endpoint} ({auth}): {type(e).__name__}: {str(e)[:200]}")
            return False

        if result.status_code != 0 or b"OK" not in result.std_out:
            self.attempts.append(f"{endpoint} ({auth}): probe returned {result.status_code}")
            return False

        logger.debug("Connected: %s + %s", endpoint, auth)
        self._session = session
        self._working_transport = transport
        return True

    def run_ps(self, script: str) -> PSRemoteResult:
        """
        Execute PowerShell script on the host.

        For localhost, runs locally.
        """
        if self._is_localhost:
            return self._run_local_ps(script)

        if not self._session and not self.connect():
            return PSRemoteResult(
                success=False,
                error="Failed to establish connection: " + "; ".join(self.attempts),
                attempts=list(self.attempts),
            )

        try:
            result = self._session.run_ps(script)
        except Exception as e:  # pywinrm surfaces transport errors from several libraries
            logger.debug("PowerShell execution on %s failed: %s", self.config.hostname, e)
            return PSRemoteResult(success=False, error=str(e), auth_used=self.config.protocol)

        return PSRemoteResult(
            success=result.status_code == 0,
            stdout=result.std_out.decode("utf-8", errors="replace"),
            stderr=result.std_err.decode("utf-8", errors="replace"),
            return_code=result.status_code,
            transport_used=self._working_transport.value if self._working_transport else "",
            auth_used=self.config.protocol,
        )

    def _run_local_ps(self, script: str) -> PSRemoteResult:
        """
        Execute PowerShell script locally.

        Writes script to temp file and runs with ExecutionPolicy Bypass.
        """
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".ps1", delete=False, encoding="utf-8"
        ) as f:
            f.write(script)
            script_path = f.name

        cmd = ["powershell.exe", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", script_path]
        logger.debug("Executing: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.operation_timeout_sec,
            )
        except subprocess.TimeoutExpired:
            return PSRemoteResult(
                success=False,
                error=f"Script timed out after {self.config.operation_timeout_sec}s",
                transport_used="local",
                auth_used="local",
            )
        except OSError as e:
            return PSRemoteResult(success=False, error=str(e), transport_used="local", auth_used="local")
        finally:
            os.unlink(script_path)

        return PSRemoteResult(
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            return_code=result.returncode,
            transport_used="local",
            auth_used="local",
        )

    def close(self) -> None:
        """Close the session."""
        self._session = None
