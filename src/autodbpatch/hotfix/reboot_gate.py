"""
Reboot / continuation gate.

Runs before each update action: a host with a pending reboot is either
restarted first, allowed through (continue mode), or aborted.
"""

from __future__ import annotations

import logging

from autodbpatch.domain.errors import (
    CheckError,
    HostConnectionError,
    PendingRebootError,
    RestartError,
)
from autodbpatch.hotfix.backend import HostBackend
from autodbpatch.hotfix.models import HostCredential

logger = logging.getLogger(__name__)


class RebootGate:
    """
    Pending-reboot checks and restart handling for one run.

    Usage:
        gate = RebootGate(backend, credential, restart_enabled=True, timeout_seconds=900)
        restarted = gate.before_action("SQL01")
        ...
        gate.restart_and_wait("SQL01")
    """

    def __init__(
        self,
        backend: HostBackend,
        credential: HostCredential | None = None,
        restart_enabled: bool = False,
        timeout_seconds: float = 900,
    ):
        self.backend = backend
        self.credential = credential
        self.restart_enabled = restart_enabled
        self.timeout_seconds = timeout_seconds

    def check_pending_reboot(self, computer_name: str) -> bool:
        """
        Raises:
            CheckError: The host could not be queried
        """
        try:
            pending = self.backend.check_pending_reboot(computer_name, self.credential)
        except HostConnectionError as exc:
            raise CheckError(f"Cannot determine reboot state of {computer_name}: {exc}") from exc
        logger.debug("%s pending reboot: %s", computer_name, pending)
        return bool(pending)

    def before_action(self, computer_name: str, continue_: bool = False) -> bool:
        """
        Gate one action. Returns True when the host was restarted.

        Raises:
            CheckError: Reboot state unknown
            PendingRebootError: Reboot pending, restart disabled, not continuing
            RestartError: Restart failed or host did not come back
        """
        if not self.check_pending_reboot(computer_name):
            return False

        if self.restart_enabled:
            logger.info("%s has a pending reboot, restarting before the next update", computer_name)
            self.restart_and_wait(computer_name)
            return True

        if continue_:
            logger.warning("%s has a pending reboot, continuing as requested", computer_name)
            return False

        raise PendingRebootError(
            f"{computer_name} has a pending reboot; restart it or enable automatic restart"
        )

    def restart_and_wait(self, computer_name: str) -> None:
        """
        Restart a host and block until it is reachable again.

        Raises:
            RestartError: Restart failed or the timeout elapsed
        """
        logger.info("Restarting %s", computer_name)
        self.backend.restart_host(computer_name, self.credential)
        if not self.backend.wait_until_reachable(computer_name, self.timeout_seconds):
            raise RestartError(
                f"{computer_name} did not come back within {self.timeout_seconds:.0f}s after restart"
            )
        logger.info("%s is back online", computer_name)
