"""
Error taxonomy for patch orchestration.

Every error except LoadError is host-scoped: the service records it on the
affected host's results and keeps processing the rest of the fleet.
"""

from __future__ import annotations


class PatchError(Exception):
    """Base class for all AutoDBPatch errors."""


class LoadError(PatchError):
    """No build reference cache and no bundled default could be loaded."""


class NetworkError(PatchError):
    """Fetching the build reference from its remote source failed."""


class NotFoundError(PatchError):
    """A version, KB or family could not be matched in the reference table."""


class PlanningError(PatchError):
    """No valid upgrade path could be planned for a host."""


class AuthError(PatchError):
    """Authentication negotiation with a host was exhausted."""


class HostConnectionError(PatchError):
    """A remote collaborator could not reach the host."""


class CheckError(HostConnectionError):
    """Pending-reboot state could not be determined."""


class PendingRebootError(PatchError):
    """A reboot is pending and automatic restart is not enabled."""


class RestartError(PatchError):
    """The host could not be restarted or did not come back in time."""


class DownloadError(PatchError):
    """An installer could not be downloaded."""


class CopyError(PatchError):
    """An installer could not be copied to the host."""


class InstallError(PatchError):
    """The installer ran but reported failure."""
