"""
AutoDBPatch command line interface.

Commands:
    update      Bring SQL Server hosts to a requested patch level
    build       Look up a build, KB or SP/CU level in the build reference
    compliance  Test an installed build against a compliance policy
    refresh     Refresh the build reference cache
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from autodbpatch.domain.builds import BuildTable, BuildVersion
from autodbpatch.domain.errors import LoadError, NetworkError, NotFoundError
from autodbpatch.domain.policy import Latest, MaxBehind, MinimumBuild, Policy
from autodbpatch.hotfix.resolver import (
    check_compliance,
    resolve_by_family,
    resolve_by_kb,
    resolve_by_version,
)
from autodbpatch.hotfix.service import HotfixService
from autodbpatch.hotfix.specs import LatestSpec, PolicySpec, parse_version_specs
from autodbpatch.infrastructure.build_store import BuildReferenceStore
from autodbpatch.infrastructure.config_loader import ConfigLoader, HotfixSettings
from autodbpatch.infrastructure.logging_config import setup_logging
from autodbpatch.infrastructure.psremote.backend import WinRMHostBackend
from autodbpatch.interface.formatters import HotfixResultFormatter

logger = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    name="autodbpatch",
    help="SQL Server patch orchestration: plan and install Service Packs and Cumulative Updates across a fleet",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    debug: bool = typer.Option(False, "--debug", help="Verbose console logging"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write a DEBUG log to this file"),
):
    """AutoDBPatch - SQL Server patch orchestration."""
    setup_logging(logging.DEBUG if debug else logging.INFO, str(log_file) if log_file else None)


def _load_settings(config: Optional[Path], overrides: dict) -> HotfixSettings:
    loader = ConfigLoader()
    try:
        settings = loader.load_settings(config or "hotfix_config.json", required=config is not None)
        return HotfixSettings.model_validate({**settings.model_dump(), **overrides})
    except (FileNotFoundError, ValueError, PermissionError) as exc:
        # pydantic.ValidationError is a ValueError
        raise typer.BadParameter(str(exc), param_hint="--config") from exc


def _store(settings: HotfixSettings) -> BuildReferenceStore:
    return BuildReferenceStore(
        cache_path=settings.build_reference_path,
        url=settings.build_reference_url,
        timeout=settings.timeouts.download_timeout_seconds,
    )


def _load_table(store: BuildReferenceStore, auto_refresh: bool) -> BuildTable:
    try:
        table = store.get_table(auto_refresh=auto_refresh)
    except (LoadError, NetworkError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    if store.check_staleness(table):
        console.print("[yellow]The build reference is out of date; run 'autodbpatch refresh'.[/yellow]")
    return table


def _fallback_prompt(assume_yes: bool):
    if assume_yes:
        return lambda computer, protocol: True
    if not sys.stdin.isatty():
        return None

    lock = threading.Lock()

    def approve(computer: str, protocol: str) -> bool:
        with lock:
            return typer.confirm(f"Authentication to {computer} failed. Retry with {protocol}?", default=False)

    return approve


@app.command()
def update(
    computer: List[str] = typer.Option(..., "--computer", "-c", help="Target host (repeatable)"),
    version: List[str] = typer.Option(
        [], "--version", "-v",
        help="Desired level: Latest, 2019Latest, 2019SP1CU3, a build number or KB (repeatable)",
    ),
    kb: List[str] = typer.Option([], "--kb", help="Install a specific KB (repeatable)"),
    max_behind: Optional[str] = typer.Option(
        None, "--max-behind", help="Update only as far as needed to stay within this lag, e.g. 0CU or 1SP1CU",
    ),
    min_build: Optional[str] = typer.Option(None, "--min-build", help="Update to at least this build"),
    path: List[str] = typer.Option([], "--path", help="Installer repository, searched recursively (repeatable)"),
    restart: Optional[bool] = typer.Option(None, "--restart/--no-restart", help="Restart hosts when required"),
    continue_: Optional[bool] = typer.Option(None, "--continue", help="Proceed over a pending reboot"),
    download: Optional[bool] = typer.Option(None, "--download", help="Download missing installers"),
    what_if: bool = typer.Option(False, "--what-if", help="Show the plan without changing anything"),
    throttle: Optional[int] = typer.Option(None, "--throttle", help="Maximum hosts processed in parallel"),
    protocol: Optional[str] = typer.Option(None, "--protocol", help="Remoting authentication (Default, Kerberos, Credssp...)"),
    credential_file: Optional[Path] = typer.Option(None, "--credential-file", help="JSON file with username/password"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file (default config/hotfix_config.json)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve authentication fallback without prompting"),
):
    """
    Bring SQL Server hosts to the requested patch level.

    Exit code is 1 when any host reports a failure.
    """
    try:
        specs = parse_version_specs([*version, *kb])
        if max_behind is not None:
            specs.append(PolicySpec(MaxBehind.parse(max_behind)))
        if min_build is not None:
            specs.append(PolicySpec(MinimumBuild(BuildVersion.parse(min_build))))
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--version") from exc
    specs = specs or [LatestSpec()]

    overrides = {
        key: value
        for key, value in {
            "restart": restart,
            "continue_": continue_,
            "download": download,
            "what_if": what_if or None,
            "throttle": throttle,
            "protocol": protocol,
        }.items()
        if value is not None
    }
    settings = _load_settings(config, overrides)
    if path:
        settings.media_paths = [*settings.media_paths, *path]

    credential = ConfigLoader().load_credential(credential_file) if credential_file else None
    table = _load_table(_store(settings), settings.auto_refresh)

    service = HotfixService(
        WinRMHostBackend(settings.timeouts, credential=credential, protocol=settings.protocol),
        table,
        settings,
        credential=credential,
        approve_fallback=_fallback_prompt(yes),
    )

    formatter = HotfixResultFormatter(console)
    console.print(
        f"[bold]{'Planning' if settings.what_if else 'Patching'} {len(computer)} host(s) "
        f"to {', '.join(str(s) for s in specs)}[/bold]"
    )
    run = service.deploy(computer, specs, progress_callback=formatter.print_progress)
    formatter.display_run(run)
    raise typer.Exit(code=run.exit_code)


@app.command()
def build(
    build_: Optional[str] = typer.Option(None, "--build", "-b", help="Build number, e.g. 15.0.4153"),
    kb: Optional[str] = typer.Option(None, "--kb", help="KB number, e.g. KB5027702"),
    family: Optional[str] = typer.Option(None, "--family", help="Release, e.g. 2019 or 15.0"),
    sp: str = typer.Option("RTM", "--sp", help="Service Pack level used with --family"),
    cu: Optional[str] = typer.Option(None, "--cu", help="Cumulative Update used with --family"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file"),
):
    """Look up a build, KB or SP/CU level in the build reference."""
    if sum(value is not None for value in (build_, kb, family)) != 1:
        raise typer.BadParameter("Use exactly one of --build, --kb or --family")

    settings = _load_settings(config, {})
    table = _load_table(_store(settings), settings.auto_refresh)

    try:
        if build_ is not None:
            resolved = resolve_by_version(table, build_)
        elif kb is not None:
            resolved = resolve_by_kb(table, kb)
        else:
            key = table.family_by_name(family) or family
            resolved = resolve_by_family(table, key, sp, cu)
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    HotfixResultFormatter(console).display_resolved(resolved)


@app.command()
def compliance(
    build_: str = typer.Option(..., "--build", "-b", help="Installed build to test"),
    latest: bool = typer.Option(False, "--latest", help="Must be on the latest build of its release"),
    min_build: Optional[str] = typer.Option(None, "--min-build", help="Must be at least this build"),
    max_behind: Optional[str] = typer.Option(None, "--max-behind", help="Allowed lag, e.g. 1SP1CU or 2CU"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file"),
):
    """
    Test an installed build against a compliance policy.

    Exit code is 1 when the build is not compliant.
    """
    if sum((latest, min_build is not None, max_behind is not None)) != 1:
        raise typer.BadParameter("Use exactly one of --latest, --min-build or --max-behind")

    try:
        policy: Policy
        if min_build is not None:
            policy = MinimumBuild(BuildVersion.parse(min_build))
        elif max_behind is not None:
            policy = MaxBehind.parse(max_behind)
        else:
            policy = Latest()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    settings = _load_settings(config, {})
    table = _load_table(_store(settings), settings.auto_refresh)

    try:
        result = check_compliance(table, build_, policy)
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--build") from exc

    HotfixResultFormatter(console).display_compliance(result)
    raise typer.Exit(code=0 if result.compliant else 1)


@app.command()
def refresh(
    config: Optional[Path] = typer.Option(None, "--config", help="Settings file"),
):
    """Download the build reference and replace the local cache."""
    settings = _load_settings(config, {})
    store = _store(settings)
    try:
        table = store.refresh()
    except NetworkError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(
        f"[green]Build reference refreshed: {len(table)} builds, "
        f"last updated {table.last_updated:%Y-%m-%d}, saved to {store.cache_path}[/green]"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
