"""
Hotfix module package.

Contains components for SQL Server patch orchestration:
- Resolver: Build reference lookups and compliance targets
- Planner: Determines which update actions each host needs
- Executor: Runs installers on a host, gated on reboot state
- Models: Data structures for plans and results

The fleet-level HotfixService lives in autodbpatch.hotfix.service; it
depends on the infrastructure layer and is not imported here.
"""

from autodbpatch.hotfix.models import (
    # Enums
    HotfixRunStatus,
    ActionStatus,
    # Models
    HostCredential,
    Component,
    UpdateAction,
    ComputerPlan,
    ExecutionResult,
    HotfixRun,
)
from autodbpatch.hotfix.specs import PolicySpec, VersionSpec, parse_version_spec, parse_version_specs
from autodbpatch.hotfix.planner import HotfixPlanner
from autodbpatch.hotfix.executor import HotfixExecutor

__all__ = [
    # Enums
    "HotfixRunStatus",
    "ActionStatus",
    # Models
    "HostCredential",
    "Component",
    "UpdateAction",
    "ComputerPlan",
    "ExecutionResult",
    "HotfixRun",
    # Specs
    "VersionSpec",
    "PolicySpec",
    "parse_version_spec",
    "parse_version_specs",
    # Services
    "HotfixPlanner",
    "HotfixExecutor",
]
