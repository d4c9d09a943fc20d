"""
Hotfix orchestration service.

High-level service that coordinates the patch workflow across a fleet:
inventory, planning, media, authentication, distribution and execution,
with bounded parallelism and host-level failure isolation.
"""

from __future__ import annotations

import logging
import queue
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path, PureWindowsPath

from autodbpatch.domain.builds import BuildTable
from autodbpatch.domain.errors import PatchError
from autodbpatch.hotfix.backend import Channel, HostBackend
from autodbpatch.hotfix.executor import HotfixExecutor
from autodbpatch.hotfix.media import DownloadCache, MediaRepository
from autodbpatch.hotfix.models import (
    ActionStatus,
    ComputerPlan,
    ExecutionResult,
    HostCredential,
    HotfixRun,
    HotfixRunStatus,
)
from autodbpatch.hotfix.planner import HotfixPlanner
from autodbpatch.hotfix.reboot_gate import RebootGate
from autodbpatch.hotfix.specs import VersionSpec
from autodbpatch.infrastructure.config_loader import HotfixSettings
from autodbpatch.infrastructure.paths import default_download_dir
from autodbpatch.infrastructure.psremote.negotiator import (
    ApproveFallback,
    AuthenticationNegotiator,
)

logger = logging.getLogger(__name__)

_HOST_DONE = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HotfixService:
    """
    High-level hotfix orchestration service.

    Coordinates the complete workflow per host:
    1. Collect installed SQL Server components
    2. Plan ordered update actions against the build reference
    3. Download missing installers (once per KB and architecture)
    4. Negotiate authentication and copy installers to the host
    5. Install sequentially with reboot handling

    Hosts run concurrently up to settings.throttle; a failure on one host
    never stops the others.

    Usage:
        service = HotfixService(backend, table, settings, credential)

        # Incremental results
        for result in service.stream(["SQL01", "SQL02"], specs):
            print(result.computer_name, result.outcome.value, result.notes)

        # Or aggregated
        run = service.deploy(["SQL01", "SQL02"], specs)
        sys.exit(run.exit_code)
    """

    def __init__(
        self,
        backend: HostBackend,
        table: BuildTable,
        settings: HotfixSettings | None = None,
        credential: HostCredential | None = None,
        approve_fallback: ApproveFallback | None = None,
        clock: Callable[[], datetime] = _now,
    ):
        """
        Initialize hotfix service.

        Args:
            backend: Host collaborators
            table: Build reference table used for every plan of this service
            settings: Run settings (defaults when omitted)
            credential: OS credential for remoting (None for integrated)
            approve_fallback: Interactive approval of the fallback protocol
            clock: Timestamp source
        """
        self.backend = backend
        self.table = table
        self.settings = settings or HotfixSettings()
        self.credential = credential
        self._clock = clock

        self.repository = MediaRepository(self.settings.media_paths)
        self.planner = HotfixPlanner(
            self.repository,
            allow_download=self.settings.download,
            restart_after_install=self.settings.restart_after_install,
        )
        self.downloads = DownloadCache(
            backend.download_update,
            Path(self.settings.download_dir) if self.settings.download_dir else default_download_dir(),
            self.repository,
        )
        self.negotiator = AuthenticationNegotiator(
            backend,
            credential,
            primary_protocol=self.settings.protocol,
            fallback_protocol=self.settings.fallback_protocol,
            approve_fallback=approve_fallback,
        )
        self.gate = RebootGate(
            backend,
            credential,
            restart_enabled=self.settings.restart,
            timeout_seconds=self.settings.timeouts.restart_timeout_seconds,
        )
        self.executor = HotfixExecutor(
            backend,
            self.gate,
            installer_arguments=self.settings.installer_arguments,
            dry_run=self.settings.what_if,
            clock=clock,
        )
        logger.info(
            "HotfixService initialized: throttle=%d, restart=%s, download=%s, what_if=%s",
            self.settings.throttle, self.settings.restart, self.settings.download, self.settings.what_if,
        )

    def create_plan(self, computer_name: str, specs: list[VersionSpec]) -> ComputerPlan:
        """
        Collect a host's inventory and plan it.

        Collector failures end up on the plan's error like planning failures.
        """
        try:
            components = self.backend.collect_installed_components(computer_name, self.credential)
        except PatchError as exc:
            logger.error("Inventory of %s failed: %s", computer_name, exc)
            return ComputerPlan(computer_name=computer_name, error=exc)

        if not components:
            logger.warning("No SQL Server components found on %s", computer_name)
        return self.planner.plan_host(
            computer_name, components, specs, self.table, continue_=self.settings.continue_
        )

    def stream(self, computers: list[str], specs: list[VersionSpec]) -> Iterator[ExecutionResult]:
        """
        Process hosts concurrently and yield results as they complete.

        Results of one host arrive in plan order; hosts interleave freely.
        """
        computers = list(dict.fromkeys(computers))
        if not computers:
            return

        results: queue.Queue = queue.Queue()
        workers = min(self.settings.throttle, len(computers))
        logger.info("Processing %d host(s) with %d parallel worker(s)", len(computers), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hotfix") as pool:
            for computer in computers:
                pool.submit(self._run_host, computer, specs, results.put)

            done = 0
            while done < len(computers):
                item = results.get()
                if item is _HOST_DONE:
                    done += 1
                    continue
                yield item

    def deploy(
        self,
        computers: list[str],
        specs: list[VersionSpec],
        progress_callback: Callable[[ExecutionResult], None] | None = None,
    ) -> HotfixRun:
        """
        Execute the deployment and aggregate every result.

        Args:
            computers: Target hosts
            specs: Desired version specifications
            progress_callback: Optional callback for real-time progress

        Returns:
            HotfixRun record with final status
        """
        run = HotfixRun(started_at=self._clock(), status=HotfixRunStatus.RUNNING, what_if=self.settings.what_if)
        for result in self.stream(computers, specs):
            run.results.append(result)
            if progress_callback is not None:
                progress_callback(result)
        run.finalize(self._clock())
        logger.info(
            "Hotfix run finished: %s (%d result(s), %d failed host(s))",
            run.status.value, len(run.results), len(run.failed_hosts),
        )
        return run

    def _run_host(self, computer_name: str, specs: list[VersionSpec], emit: Callable) -> None:
        try:
            self._process_host(computer_name, specs, emit)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected failure while processing %s", computer_name)
            emit(ExecutionResult.host_failure(computer_name, exc, self._clock()))
        finally:
            emit(_HOST_DONE)

    def _process_host(self, computer_name: str, specs: list[VersionSpec], emit: Callable) -> None:
        plan = self.create_plan(computer_name, specs)
        if plan.error is not None:
            emit(ExecutionResult.host_failure(computer_name, plan.error, self._clock()))
            return

        if not plan.actions:
            now = self._clock()
            emit(ExecutionResult(
                computer_name=computer_name,
                outcome=ActionStatus.SKIPPED,
                successful=True,
                started_at=now,
                finished_at=now,
                notes="Already up to date",
            ))
            return

        if self.settings.what_if:
            self.executor.execute_plan(plan, None, emit)
            return

        channel: Channel | None = None
        try:
            self._resolve_downloads(plan)
            channel = self.negotiator.establish(computer_name)
            self._distribute(plan)
        except PatchError as exc:
            logger.error("%s: %s", computer_name, exc)
            self._fail_plan(plan, exc, emit)
            if channel is not None:
                channel.close()
            return

        try:
            self.executor.execute_plan(plan, channel, emit)
        finally:
            channel.close()

    def _resolve_downloads(self, plan: ComputerPlan) -> None:
        for action in plan.actions:
            if action.download_pending:
                action.installer_path = self.downloads.get(action.download_request)
                action.download_pending = False

    def _distribute(self, plan: ComputerPlan) -> None:
        """Copy local installers to the host; UNC paths are used in place."""
        copied: dict[str, str] = {}
        for action in plan.actions:
            source = str(action.installer_path)
            if source.startswith("\\\\"):
                continue
            if source not in copied:
                copied[source] = self.backend.copy_file_to_host(
                    plan.computer_name,
                    self.credential,
                    Path(source),
                    self.settings.remote_directory,
                )
                logger.debug("%s: copied %s to %s", plan.computer_name, source, copied[source])
            action.installer_path = PureWindowsPath(copied[source])

    def _fail_plan(self, plan: ComputerPlan, error: PatchError, emit: Callable) -> None:
        now = self._clock()
        for action in plan.actions:
            action.status = ActionStatus.FAILED
            action.successful = False
            action.add_note(str(error))
            emit(ExecutionResult.from_action(action, now, now, error))
