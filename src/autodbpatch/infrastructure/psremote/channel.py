"""
Remote execution channel over PSRemoteClient.
"""

from __future__ import annotations

import logging

from autodbpatch.hotfix.backend import CommandResult
from autodbpatch.infrastructure.psremote.client import PSRemoteClient

logger = logging.getLogger(__name__)


class WinRMChannel:
    """
    Channel implementation backed by an established PSRemoteClient session.

    Commands are PowerShell scripts; the script's exit code is returned.
    """

    def __init__(self, computer_name: str, protocol: str, client: PSRemoteClient):
        self.computer_name = computer_name
        self.protocol = protocol
        self._client = client

    def execute(self, command: str) -> CommandResult:
        result = self._client.run_ps(command)
        if result.error:
            logger.debug("%s: command failed: %s", self.computer_name, result.error)
        return CommandResult(
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr or result.error,
            exit_code=result.return_code if result.return_code >= 0 else None,
        )

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:
        return f"WinRMChannel({self.computer_name!r}, protocol={self.protocol!r})"
