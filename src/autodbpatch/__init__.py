"""
AutoDBPatch - SQL Server Patch Orchestration Tool.

Resolves a fleet of SQL Server installations to a requested patch level,
plans the ordered Service Pack / Cumulative Update installs each host needs,
and runs them across many hosts in parallel.

Usage:
    # CLI (recommended)
    autodbpatch update -c SQL01 -c SQL02 --version Latest --path \\\\share\\patches --restart

    # Programmatic
    from autodbpatch.hotfix import parse_version_specs
    from autodbpatch.hotfix.service import HotfixService

    service = HotfixService(backend, table)
    run = service.deploy(["SQL01"], parse_version_specs(["2019CU20"]))
"""

__version__ = "0.1.0"
__author__ = "AutoDBPatch Team"

__all__ = ["__version__"]
