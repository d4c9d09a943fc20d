"""
Domain layer package.

Contains pure data models with no I/O dependencies: build reference records,
compliance policies and the error taxonomy.
"""

from autodbpatch.domain.builds import (
    STALENESS_WINDOW,
    BuildRecord,
    BuildTable,
    BuildVersion,
    MatchType,
    ResolvedBuild,
    normalize_kb,
)
from autodbpatch.domain.policy import (
    ComplianceResult,
    Latest,
    MaxBehind,
    MinimumBuild,
    Policy,
)
from autodbpatch.domain.errors import (
    AuthError,
    CheckError,
    CopyError,
    DownloadError,
    HostConnectionError,
    InstallError,
    LoadError,
    NetworkError,
    NotFoundError,
    PatchError,
    PendingRebootError,
    PlanningError,
    RestartError,
)

__all__ = [
    "STALENESS_WINDOW",
    "BuildRecord",
    "BuildTable",
    "BuildVersion",
    "MatchType",
    "ResolvedBuild",
    "normalize_kb",
    "ComplianceResult",
    "Latest",
    "MaxBehind",
    "MinimumBuild",
    "Policy",
    "AuthError",
    "CheckError",
    "CopyError",
    "DownloadError",
    "HostConnectionError",
    "InstallError",
    "LoadError",
    "NetworkError",
    "NotFoundError",
    "PatchError",
    "PendingRebootError",
    "PlanningError",
    "RestartError",
]
