"""
Hotfix execution module.

Runs one host's planned update actions, strictly in order, over an
established remote channel. Each action is gated on the host's reboot state
and its outcome is published as soon as it is known.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from autodbpatch.domain.errors import (
    CheckError,
    InstallError,
    PatchError,
    PendingRebootError,
    RestartError,
)
from autodbpatch.hotfix.backend import Channel, HostBackend
from autodbpatch.hotfix.models import (
    INSTALLER_ARGUMENTS,
    ActionStatus,
    ComputerPlan,
    ExecutionResult,
    UpdateAction,
)
from autodbpatch.hotfix.reboot_gate import RebootGate

logger = logging.getLogger(__name__)

# Exit codes from SQL Server installers
EXIT_SUCCESS = 0
EXIT_REBOOT_REQUIRED = 3010

Emit = Callable[[ExecutionResult], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HotfixExecutor:
    """
    Executes a host's update actions sequentially.

    For every action:
    1. Run the reboot gate (restart first, continue, or abort)
    2. Run the installer with the configured silent-patch arguments
    3. Restart and wait for the host when the update asks for it
    4. Publish an ExecutionResult

    A failed action stops the host: the remaining actions are reported as
    skipped. Other hosts are not affected.

    Usage:
        executor = HotfixExecutor(backend, gate)
        results = executor.execute_plan(plan, channel, emit=print)
    """

    def __init__(
        self,
        backend: HostBackend,
        gate: RebootGate,
        installer_arguments: str = INSTALLER_ARGUMENTS,
        dry_run: bool = False,
        clock: Callable[[], datetime] = _now,
    ):
        """
        Initialize hotfix executor.

        Args:
            backend: Host collaborators (installer, restart)
            gate: Reboot gate of this run
            installer_arguments: CLI arguments for silent install
            dry_run: If True, report actions without executing
            clock: Timestamp source
        """
        self.backend = backend
        self.gate = gate
        self.installer_arguments = installer_arguments
        self.dry_run = dry_run
        self._clock = clock
        logger.debug(
            "HotfixExecutor initialized: restart=%s, dry_run=%s", gate.restart_enabled, dry_run
        )

    def execute_plan(
        self,
        plan: ComputerPlan,
        channel: Channel | None,
        emit: Emit | None = None,
    ) -> list[ExecutionResult]:
        """
        Execute all actions of a plan in order.

        Args:
            plan: Host plan (must not carry a planning error)
            channel: Established channel; unused in dry-run mode
            emit: Called with each result as soon as it is final

        Returns:
            Results in plan order
        """
        results: list[ExecutionResult] = []

        def publish(action: UpdateAction, started: datetime, error: Exception | None = None) -> None:
            result = ExecutionResult.from_action(action, started, self._clock(), error)
            results.append(result)
            if emit is not None:
                emit(result)

        if self.dry_run:
            for action in plan.actions:
                started = self._clock()
                action.status = ActionStatus.WHAT_IF
                source = "download" if action.download_pending else action.installer_path
                action.add_note(
                    f"What-If: would install KB{action.kb} ({action.from_version} -> "
                    f"{action.target_version}) from {source}"
                )
                publish(action, started)
            return results

        for index, action in enumerate(plan.actions):
            started = self._clock()
            remaining = plan.actions[index + 1:]

            try:
                if self.gate.before_action(plan.computer_name, plan.continue_):
                    action.add_note("Pending reboot cleared by restart before install")
            except (CheckError, PendingRebootError, RestartError) as exc:
                logger.error("%s: %s", plan.computer_name, exc)
                self._fail(action, exc)
                publish(action, started, exc)
                self._skip(remaining, f"Not attempted: {exc}", publish)
                return results

            error = self._install(plan.computer_name, action, channel)
            if error is not None:
                publish(action, started, error)
                self._skip(remaining, f"Not attempted: KB{action.kb} failed", publish)
                return results

            if action.requires_restart and self.gate.restart_enabled:
                try:
                    self.gate.restart_and_wait(plan.computer_name)
                    action.restarted = True
                except RestartError as exc:
                    logger.error("%s: %s", plan.computer_name, exc)
                    action.add_note(str(exc))
                    publish(action, started)
                    self._skip(remaining, f"Host not reachable after restart: {exc}", publish)
                    return results
            elif action.requires_restart:
                action.add_note("Restart required before the update is complete")

            publish(action, started)

        return results

    def _install(
        self, computer_name: str, action: UpdateAction, channel: Channel | None
    ) -> PatchError | None:
        action.status = ActionStatus.RUNNING
        logger.info(
            "%s: installing %s (%s -> %s)",
            computer_name, action.description, action.from_version, action.target_version,
        )
        try:
            outcome = self.backend.run_installer(
                channel, str(action.installer_path), self.installer_arguments
            )
        except PatchError as exc:
            logger.error("%s: installer for KB%s could not run: %s", computer_name, action.kb, exc)
            self._fail(action, exc)
            return exc

        if outcome.notes:
            action.add_note(outcome.notes)
        if not outcome.succeeded:
            error = InstallError(
                f"KB{action.kb} failed on {computer_name}"
                + (f" with exit code {outcome.exit_code}" if outcome.exit_code is not None else "")
            )
            logger.error("%s", error)
            self._fail(action, error)
            return error

        action.status = ActionStatus.SUCCESS
        action.successful = True
        if outcome.restart_required or outcome.exit_code == EXIT_REBOOT_REQUIRED:
            action.requires_restart = True
        logger.info("%s: KB%s installed", computer_name, action.kb)
        return None

    @staticmethod
    def _fail(action: UpdateAction, error: Exception) -> None:
        action.status = ActionStatus.FAILED
        action.successful = False
        action.add_note(str(error))

    def _skip(
        self,
        actions: list[UpdateAction],
        note: str,
        publish: Callable[[UpdateAction, datetime], None],
    ) -> None:
        for action in actions:
            action.status = ActionStatus.SKIPPED
            action.successful = False
            action.add_note(note)
            publish(action, self._clock())
