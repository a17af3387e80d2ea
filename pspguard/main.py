"""
pspguard CLI - main entry point.

Typer-based CLI that drives the PodSecurityPolicy reconciler against one or
more clusters, persisting lifecycle state on local disk.

Exit codes: 0 converged, 1 fatal error, 2 converged with leftover policies.
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import config
from .errors import PolicyGuardError
from .models import (
    ClusterIdentity,
    ClusterRun,
    ConvergenceReport,
    LifecycleAction,
    TeardownReport,
)
from .runtime import (
    diff_cluster,
    discover_clusters,
    reconcile_cluster,
    reconcile_clusters,
    teardown_cluster,
)
from .state import StateStore

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="pspguard",
    help="pspguard - PodSecurityPolicy baseline reconciler",
    add_completion=False,
)

console = Console()

EXIT_ERROR = 1
EXIT_DEGRADED = 2


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _read_kubeconfig(path: Path) -> str:
    try:
        return path.expanduser().read_text(encoding="utf-8")
    except OSError as e:
        console.print(f"[bold red]Error:[/bold red] cannot read kubeconfig {path}: {e}")
        raise typer.Exit(code=EXIT_ERROR)


@app.command()
def reconcile(
    identity: ClusterIdentity = typer.Argument(..., help="Cluster identity."),
    kubeconfig: Path = typer.Option(..., "--kubeconfig", "-k", help="Path to kubeconfig file."),
    state_dir: str = typer.Option(config.STATE_DIR, "--state-dir", help="Lifecycle state directory."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging."),
) -> None:
    """Create or update the PSP baseline on one cluster."""
    _setup_logging(verbose)
    kubeconfig_text = _read_kubeconfig(kubeconfig)

    try:
        run = reconcile_cluster(identity.value, kubeconfig_text, StateStore(state_dir))
    except PolicyGuardError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}\n")
        logger.debug("Reconciliation failed", exc_info=True)
        raise typer.Exit(code=EXIT_ERROR)

    _display_runs([run])
    _exit_for([run])


@app.command("reconcile-all")
def reconcile_all(
    state_dir: str = typer.Option(config.STATE_DIR, "--state-dir", help="Lifecycle state directory."),
    max_workers: int = typer.Option(config.MAX_WORKERS, "--max-workers", help="Clusters reconciled in parallel."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging."),
) -> None:
    """Reconcile every cluster with a PSPGUARD_<IDENTITY>_KUBECONFIG variable set."""
    _setup_logging(verbose)

    try:
        clusters = discover_clusters()
    except PolicyGuardError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}\n")
        raise typer.Exit(code=EXIT_ERROR)

    if not clusters:
        console.print("[yellow]No clusters configured.[/yellow] Set PSPGUARD_<IDENTITY>_KUBECONFIG.")
        raise typer.Exit(code=EXIT_ERROR)

    runs = reconcile_clusters(clusters, StateStore(state_dir), max_workers=max_workers)
    _display_runs(runs)
    _exit_for(runs)


@app.command()
def diff(
    identity: ClusterIdentity = typer.Argument(..., help="Cluster identity."),
    kubeconfig: Path = typer.Option(..., "--kubeconfig", "-k", help="Path to kubeconfig file."),
    state_dir: str = typer.Option(config.STATE_DIR, "--state-dir", help="Lifecycle state directory."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging."),
) -> None:
    """Show required policies missing from a cluster. Makes no changes."""
    _setup_logging(verbose)
    kubeconfig_text = _read_kubeconfig(kubeconfig)

    try:
        result = diff_cluster(identity.value, kubeconfig_text, StateStore(state_dir))
    except PolicyGuardError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}\n")
        raise typer.Exit(code=EXIT_ERROR)

    if not result.changes:
        console.print(f"[green]{identity.value}: all required policies present[/green]")
        return
    console.print(f"[yellow]{identity.value}: {len(result.missing)} required policies missing[/yellow]")
    for name in result.missing:
        console.print(f"  + {name}")


@app.command()
def teardown(
    identity: ClusterIdentity = typer.Argument(..., help="Cluster identity."),
    state_dir: str = typer.Option(config.STATE_DIR, "--state-dir", help="Lifecycle state directory."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip interactive confirmation."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable DEBUG logging."),
) -> None:
    """Delete every managed policy object from a cluster."""
    _setup_logging(verbose)
    if not yes and not typer.confirm(f"Delete the managed PSP set from {identity.value}?", default=False):
        raise typer.Exit(code=EXIT_ERROR)

    try:
        run = teardown_cluster(identity.value, StateStore(state_dir))
    except PolicyGuardError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}\n")
        raise typer.Exit(code=EXIT_ERROR)

    _display_runs([run])
    _exit_for([run])


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__
    console.print(f"pspguard version [cyan]{__version__}[/cyan]")


def _display_runs(runs: List[ClusterRun]) -> None:
    """Display one summary row per cluster."""
    table = Table(title="Reconciliation Summary", show_header=True, header_style="bold magenta")
    table.add_column("Cluster", style="cyan")
    table.add_column("Action")
    table.add_column("Applied", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Problems", style="red")

    action_color = {
        LifecycleAction.created: "green",
        LifecycleAction.updated: "green",
        LifecycleAction.unchanged: "blue",
        LifecycleAction.deleted: "yellow",
        LifecycleAction.failed: "red",
    }

    for run in runs:
        applied = deleted = "-"
        problems: Optional[str] = run.error or None
        report = run.report
        if isinstance(report, ConvergenceReport):
            applied = str(len(report.applied))
            deleted = str(len(report.deleted))
            if report.failed_deletes:
                problems = ", ".join(sorted(report.failed_deletes))
        elif isinstance(report, TeardownReport):
            deleted = str(len(report.deleted))
            if report.failed:
                problems = ", ".join(sorted(report.failed))
        color = action_color[run.action]
        table.add_row(
            run.identity,
            f"[{color}]{run.action.value}[/{color}]",
            applied,
            deleted,
            problems or "",
        )

    console.print()
    console.print(table)


def _exit_for(runs: List[ClusterRun]) -> None:
    if any(run.action == LifecycleAction.failed for run in runs):
        raise typer.Exit(code=EXIT_ERROR)
    if any(run.degraded for run in runs):
        raise typer.Exit(code=EXIT_DEGRADED)


if __name__ == "__main__":
    app()
