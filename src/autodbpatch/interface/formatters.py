"""
CLI result formatters.

Separates display logic from command logic: every rich table and status
line printed by the CLI is built here.
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from autodbpatch.domain.builds import ResolvedBuild
from autodbpatch.domain.policy import ComplianceResult, MaxBehind, MinimumBuild, Policy
from autodbpatch.hotfix.models import ActionStatus, ExecutionResult, HotfixRun

STATUS_STYLES = {
    ActionStatus.SUCCESS: "[green]Success[/green]",
    ActionStatus.FAILED: "[red]Failed[/red]",
    ActionStatus.SKIPPED: "[yellow]Skipped[/yellow]",
    ActionStatus.WHAT_IF: "[cyan]What-If[/cyan]",
    ActionStatus.PENDING: "[dim]Pending[/dim]",
    ActionStatus.RUNNING: "[blue]Running[/blue]",
}


def describe_policy(policy: Policy) -> str:
    match policy:
        case MinimumBuild(version=version):
            return f"Minimum build {version}"
        case MaxBehind():
            return f"At most {policy} behind"
        case _:
            return "Latest"


class HotfixResultFormatter:
    """
    Formatter for patch results, build lookups and compliance checks.

    Usage:
        formatter = HotfixResultFormatter()
        run = service.deploy(hosts, specs, progress_callback=formatter.print_progress)
        formatter.display_run(run)
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def print_progress(self, result: ExecutionResult) -> None:
        """One line per result as it arrives."""
        status = STATUS_STYLES.get(result.outcome, result.outcome.value)
        what = f"KB{result.kb}" if result.kb else "host"
        line = f"  {status} [cyan]{result.computer_name}[/cyan] {what}"
        if result.notes:
            line += f" [dim]{escape(result.notes)}[/dim]"
        self.console.print(line)

    def display_run(self, run: HotfixRun) -> None:
        """
        Display all results of a run in a table with a summary line.

        Args:
            run: Finalized run
        """
        title = "What-If Results" if run.what_if else "Patch Results"
        table = Table(title=title)
        table.add_column("Computer", style="cyan", no_wrap=True)
        table.add_column("Update", style="blue")
        table.add_column("Target", style="magenta")
        table.add_column("Status")
        table.add_column("Restarted")
        table.add_column("Duration", justify="right")
        table.add_column("Notes", overflow="fold")

        for result in run.results:
            duration = result.duration_seconds
            table.add_row(
                result.computer_name,
                result.description or (f"KB{result.kb}" if result.kb else "-"),
                str(result.target_version) if result.target_version else "-",
                STATUS_STYLES.get(result.outcome, result.outcome.value),
                "Yes" if result.restarted else "No",
                f"{duration:.0f}s" if duration is not None else "-",
                escape(result.notes),
            )

        self.console.print(table)

        hosts = {r.computer_name for r in run.results}
        failed = run.failed_hosts
        color = "green" if not failed else ("red" if len(failed) == len(hosts) else "yellow")
        self.console.print(
            f"\n[{color}]Summary: {len(hosts) - len(failed)}/{len(hosts)} host(s) without failures, "
            f"status {run.status.value}[/{color}]"
        )
        if failed:
            self.console.print(f"[red]Failed hosts: {', '.join(failed)}[/red]")

    def display_resolved(self, resolved: ResolvedBuild) -> None:
        table = Table(title="Build Reference", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        match_style = "green" if resolved.is_exact else "yellow"
        table.add_row("Build", str(resolved.version))
        table.add_row("Match", f"[{match_style}]{resolved.match_type.value}[/{match_style}]")
        table.add_row("Release", resolved.family_name or "-")
        table.add_row("Level", resolved.level)
        table.add_row("KB", ", ".join(f"KB{kb}" for kb in sorted(resolved.kb_list)) or "-")
        table.add_row("Supported until", str(resolved.supported_until) if resolved.supported_until else "-")
        table.add_row("Retired", "[red]Yes[/red]" if resolved.retired else "No")
        self.console.print(table)
        if resolved.warning:
            self.console.print(f"[yellow]Warning: {resolved.warning}[/yellow]")

    def display_compliance(self, result: ComplianceResult) -> None:
        status = "[green]Compliant[/green]" if result.compliant else "[red]Not compliant[/red]"
        table = Table(title="Compliance", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Installed", f"{result.installed.version} ({result.installed.level})")
        table.add_row("Policy", describe_policy(result.policy))
        table.add_row("Target", str(result.target))
        table.add_row("Status", status)
        self.console.print(table)
        for warning in result.warnings:
            self.console.print(f"[yellow]Warning: {warning}[/yellow]")
