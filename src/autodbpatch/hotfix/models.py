"""
Hotfix domain models.

Contains data structures for planning and tracking SQL Server update
deployments across hosts. These models are used by the hotfix planner,
executor, and service modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from autodbpatch.domain.builds import BuildVersion
from autodbpatch.domain.errors import PatchError

# Silent patch arguments accepted by every SQL Server SP/CU installer
INSTALLER_ARGUMENTS = "/quiet /IAcceptSQLServerLicenseTerms /Action=Patch /AllInstances"


# ============================================================================
# Enumerations
# ============================================================================

class HotfixRunStatus(Enum):
    """Status of an overall hotfix deployment run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"  # Some hosts succeeded, some failed
    FAILED = "failed"
    WHAT_IF = "what_if"


class ActionStatus(Enum):
    """Status of a single update action."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    WHAT_IF = "what_if"


# ============================================================================
# Inventory and planning models
# ============================================================================

@dataclass
class HostCredential:
    """OS credential used for remoting, restart and file copy."""
    username: str | None = None
    password: str | None = None

    @property
    def is_integrated(self) -> bool:
        return not self.username

    def __repr__(self) -> str:
        return f"HostCredential(username={self.username!r})"


@dataclass
class Component:
    """
    One installed SQL Server engine instance on one host.

    The planner mutates current_version on its own copy while simulating
    the effect of each planned action.

    Attributes:
        computer_name: Host the instance lives on
        instance_name: Instance name (MSSQLSERVER for the default instance)
        major_version: Engine major version (13 for 2016, 15 for 2019)
        architecture: "x64" or "x86"
        current_version: Installed build
    """
    computer_name: str
    instance_name: str
    major_version: int
    architecture: str
    current_version: BuildVersion

    @property
    def family(self) -> str:
        return self.current_version.family


@dataclass
class DownloadRequest:
    """Installer that has to be fetched before distribution."""
    kb: str
    architecture: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.kb, self.architecture.lower())


@dataclass
class UpdateAction:
    """
    A single planned installation step on one host.

    Created by the planner, annotated by the executor.

    Attributes:
        computer_name: Target host
        major_version: Engine major version the installer applies to
        architecture: Installer architecture
        kb: Knowledge-base id of the installer
        target_version: Build reached after this step
        from_version: Build before this step (after earlier steps of the plan)
        service_pack: Accumulated SP label of the target build
        cumulative_update: Accumulated CU label of the target build
        installer_path: Local or remote installer path, None while pending download
        download_pending: Installer has to be downloaded first
        requires_restart: Installer asked for a restart
        status: Execution status
        successful: Outcome, None until executed
        restarted: Host was restarted after this step
        notes: Operator-readable notes
    """
    computer_name: str
    major_version: int
    architecture: str
    kb: str
    target_version: BuildVersion
    from_version: BuildVersion | None = None
    service_pack: str | None = None
    cumulative_update: str | None = None
    family_name: str | None = None
    installer_path: Path | str | None = None
    download_pending: bool = False
    requires_restart: bool = False
    status: ActionStatus = ActionStatus.PENDING
    successful: bool | None = None
    restarted: bool = False
    notes: list[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        """Human-readable description, e.g. "SQL Server 2019 CU22 (KB5027702)"."""
        name = f"SQL Server {self.family_name}" if self.family_name else f"SQL Server {self.major_version}"
        level = " ".join(p for p in (self.service_pack, self.cumulative_update) if p)
        return f"{name} {level} (KB{self.kb})".replace("  ", " ")

    @property
    def download_request(self) -> DownloadRequest:
        return DownloadRequest(kb=self.kb, architecture=self.architecture)

    def add_note(self, note: str) -> None:
        self.notes.append(note)


@dataclass
class ComputerPlan:
    """
    Ordered update actions for one host.

    Actions of one major version are in ascending target-version order and
    a Service Pack action precedes the CU actions that depend on it.
    A plan with an error has no actions.
    """
    computer_name: str
    actions: list[UpdateAction] = field(default_factory=list)
    components: list[Component] = field(default_factory=list)
    error: PatchError | None = None
    continue_: bool = False

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def pending_downloads(self) -> list[DownloadRequest]:
        return [a.download_request for a in self.actions if a.download_pending]


# ============================================================================
# Execution results
# ============================================================================

@dataclass(frozen=True)
class ExecutionResult:
    """
    Terminal record for one (host, action) pair, or for a host-level failure
    when kb is None.
    """
    computer_name: str
    outcome: ActionStatus
    kb: str | None = None
    target_version: BuildVersion | None = None
    description: str = ""
    successful: bool = False
    restarted: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    notes: str = ""
    error_type: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def is_failure(self) -> bool:
        """A failure that counts against the run (skips and What-If do not)."""
        return self.outcome is ActionStatus.FAILED

    @classmethod
    def from_action(
        cls,
        action: UpdateAction,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        error: Exception | None = None,
    ) -> ExecutionResult:
        return cls(
            computer_name=action.computer_name,
            outcome=action.status,
            kb=action.kb,
            target_version=action.target_version,
            description=action.description,
            successful=bool(action.successful),
            restarted=action.restarted,
            started_at=started_at,
            finished_at=finished_at,
            notes="; ".join(action.notes),
            error_type=type(error).__name__ if error else None,
        )

    @classmethod
    def host_failure(
        cls, computer_name: str, error: Exception, when: datetime | None = None
    ) -> ExecutionResult:
        return cls(
            computer_name=computer_name,
            outcome=ActionStatus.FAILED,
            started_at=when,
            finished_at=when,
            notes=str(error),
            error_type=type(error).__name__,
        )


@dataclass
class HotfixRun:
    """
    A hotfix deployment session across multiple hosts.

    Attributes:
        started_at: Timestamp when deployment started
        completed_at: Timestamp when deployment completed
        status: Overall status of the run
        what_if: Planning-only run
        results: Every result emitted during the run, in arrival order
    """
    started_at: datetime | None = None
    completed_at: datetime | None = None
    status: HotfixRunStatus = HotfixRunStatus.PENDING
    what_if: bool = False
    results: list[ExecutionResult] = field(default_factory=list)

    @property
    def failed_hosts(self) -> list[str]:
        return sorted({r.computer_name for r in self.results if r.is_failure})

    @property
    def exit_code(self) -> int:
        """Non-zero when any host reported a non-skipped failure."""
        return 1 if self.failed_hosts else 0

    def finalize(self, completed_at: datetime) -> None:
        self.completed_at = completed_at
        hosts = {r.computer_name for r in self.results}
        failed = set(self.failed_hosts)
        if self.what_if:
            self.status = HotfixRunStatus.WHAT_IF
        elif not failed:
            self.status = HotfixRunStatus.COMPLETED
        elif failed == hosts:
            self.status = HotfixRunStatus.FAILED
        else:
            self.status = HotfixRunStatus.PARTIAL
