"""
Cadence CLI entry point.

Commands:
    cadence start            — Run the daemon in the foreground
    cadence stop [--all]     — Stop the daemon for a project, or for every project
    cadence status           — Daemon, heartbeat and next job runs
    cadence jobs             — List job documents
    cadence session show|reset|backup
    cadence logs             — Recent daemon log, events or run records
    cadence config           — Show or patch settings
    cadence version
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cadence.core.paths import CadencePaths

app = typer.Typer(
    name="cadence",
    help="Cadence — scheduled, session-continuous runs of an AI assistant.",
    add_completion=False,
)
session_app = typer.Typer(help="Inspect or rotate the conversation session", no_args_is_help=True)
app.add_typer(session_app, name="session")

console = Console()


def get_paths(project: Path | None) -> CadencePaths:
    """Resolve the state directory for a project (cwd by default)."""
    return CadencePaths.for_project(project)


@app.command()
def start(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the daemon in the foreground until SIGTERM or Ctrl+C."""
    from cadence.core.errors import ConfigError
    from cadence.daemon import run_daemon

    paths = get_paths(project)
    console.print(f"[bold green]Cadence[/bold green] starting for [cyan]{paths.project_dir}[/cyan]")
    try:
        run_daemon(paths.project_dir, logging.DEBUG if verbose else logging.INFO)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass
    console.print("[dim]Cadence stopped[/dim]")


@app.command()
def stop(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    all_: bool = typer.Option(False, "--all", "-a", help="Stop the daemons of every known project"),
) -> None:
    """Stop the daemon running for a project."""
    from cadence.scheduler.status import clear_state
    from cadence.service.pid import read_marker, remove_marker, terminate

    if all_:
        _stop_all()
        return

    paths = get_paths(project)
    marker = read_marker(paths.pid_file)
    if marker is None:
        console.print("[dim]No daemon is running (pid file not found).[/dim]")
        raise typer.Exit(0)

    if not marker.alive:
        console.print(f"[yellow]Daemon process {marker.pid} already dead, cleaning up.[/yellow]")
    elif terminate(marker.pid):
        console.print(f"[green]Stopped daemon (pid {marker.pid}).[/green]")
    else:
        console.print(f"[red]Failed to stop daemon (pid {marker.pid}).[/red]")
        raise typer.Exit(1)

    remove_marker(paths.pid_file)
    clear_state(paths.state_file)


def _stop_all() -> None:
    """SIGTERM every live daemon recorded in the project list, without waiting."""
    from rich.markup import escape

    from cadence.scheduler.status import clear_state
    from cadence.service.pid import read_marker, remove_marker, send_signal
    from cadence.service.projects import known_projects

    found = 0
    for project_dir in known_projects():
        paths = get_paths(project_dir)
        marker = read_marker(paths.pid_file)
        if marker is None:
            continue
        if not marker.alive:
            # stale marker left by a crashed daemon
            remove_marker(paths.pid_file)
            clear_state(paths.state_file)
            continue
        found += 1
        if send_signal(marker.pid):
            console.print(f"[yellow]■ Stopped[/yellow] pid {marker.pid} [dim]{escape(str(project_dir))}[/dim]")
            remove_marker(paths.pid_file)
            clear_state(paths.state_file)
        else:
            console.print(f"[red]✗ Failed to stop[/red] pid {marker.pid} [dim]{escape(str(project_dir))}[/dim]")

    if not found:
        console.print("[dim]No running daemons found.[/dim]")


@app.command()
def status(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
) -> None:
    """Show whether the daemon runs, and when things fire next."""
    from cadence.scheduler.status import format_countdown, read_state
    from cadence.service.pid import read_marker

    paths = get_paths(project)
    marker = read_marker(paths.pid_file)
    if marker is None or not marker.alive:
        console.print("[yellow]● Not running[/yellow]")
        raise typer.Exit(0)

    console.print(f"[green]● Running[/green] pid {marker.pid}")
    state = read_state(paths.state_file)
    if state is None:
        console.print("[dim]No status snapshot yet.[/dim]")
        return

    now_ms = int(time.time() * 1000)
    console.print(f"[bold]Security:[/bold] {state.security}")
    if state.next_heartbeat_at is not None:
        console.print(f"[bold]Heartbeat:[/bold] {format_countdown(state.next_heartbeat_at, now_ms)}")
    else:
        console.print("[bold]Heartbeat:[/bold] [dim]disabled[/dim]")

    if not state.jobs:
        console.print("[dim]No jobs loaded.[/dim]")
        return
    table = Table(title="Jobs")
    table.add_column("Name", style="cyan")
    table.add_column("Schedule")
    table.add_column("Next run")
    for job in state.jobs:
        table.add_row(job.name, job.schedule, format_countdown(job.next_at, now_ms))
    console.print(table)


@app.command()
def jobs(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
) -> None:
    """List the job documents that would load."""
    from cadence.scheduler.store import JobStore

    paths = get_paths(project)
    loaded = JobStore(paths.jobs_dir).load_jobs_sync()
    if not loaded:
        console.print(f"[dim]No jobs in {paths.jobs_dir}[/dim]")
        raise typer.Exit(0)

    table = Table(title=f"Jobs ({len(loaded)})")
    table.add_column("Name", style="cyan")
    table.add_column("Schedule")
    table.add_column("Type")
    table.add_column("Recurring")
    table.add_column("Notify")
    for job in loaded:
        table.add_row(
            job.name,
            job.schedule,
            job.kind.value,
            "yes" if job.recurring else "once",
            job.notify.value,
        )
    console.print(table)


# ━━━ session ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _registry(project: Path | None):
    from cadence.session.registry import SessionRegistry

    return SessionRegistry(get_paths(project).session_file)


@session_app.command("show")
def session_show(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
) -> None:
    """Show the current session identity."""
    identity = asyncio.run(_registry(project).peek())
    if identity is None:
        console.print("[dim]No session yet. One is created on the next run.[/dim]")
        return
    console.print(f"[bold]Session:[/bold] {identity.id}")
    console.print(f"[bold]Created:[/bold] {identity.created_at}")
    console.print(f"[bold]Last used:[/bold] {identity.last_used_at}")


@session_app.command("reset")
def session_reset(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
) -> None:
    """Discard the session. The next run starts a fresh conversation."""
    asyncio.run(_registry(project).reset())
    console.print("[green]Session reset.[/green]")


@session_app.command("backup")
def session_backup(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
) -> None:
    """Archive the session as session_<n>.backup."""
    name = asyncio.run(_registry(project).backup())
    if name is None:
        console.print("[dim]No session to back up.[/dim]")
        return
    console.print(f"[green]Session archived as {name}[/green]")


# ━━━ logs / config / version ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@app.command()
def logs(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    events: bool = typer.Option(False, "--events", "-e", help="Show events log instead"),
    runs: bool = typer.Option(False, "--runs", "-r", help="Show the latest run record"),
) -> None:
    """Show recent logs."""
    from datetime import datetime

    log_dir = get_paths(project).logs_dir
    if not log_dir.exists():
        console.print("[dim]No logs found.[/dim]")
        raise typer.Exit(0)

    if runs:
        records = sorted(log_dir.glob("*-*.log"), key=lambda p: p.stat().st_mtime)
        records = [p for p in records if not p.name.startswith("cadence_")]
        if not records:
            console.print("[dim]No run records yet.[/dim]")
            raise typer.Exit(0)
        latest = records[-1]
        console.print(Panel(Text(latest.read_text(encoding="utf-8")), title=latest.name, border_style="dim"))
        return

    date_str = datetime.now().strftime("%Y%m%d")
    log_file = log_dir / (f"events_{date_str}.jsonl" if events else f"cadence_{date_str}.log")
    if not log_file.exists():
        console.print(f"[dim]No log file for today: {log_file}[/dim]")
        raise typer.Exit(0)

    all_lines = log_file.read_text(encoding="utf-8").splitlines()
    for line in all_lines[-lines:]:
        console.print(line, markup=False)


@app.command()
def config(
    project: Path = typer.Option(None, "--project", "-p", help="Project directory (default: cwd)"),
    set_: list[str] = typer.Option(
        None, "--set", "-s", help="Patch a setting, e.g. security.level=strict (repeatable)"
    ),
) -> None:
    """Show effective settings, or patch settings.json."""
    from cadence.core.config import CadenceConfig, update_settings
    from cadence.core.errors import CadenceError

    paths = get_paths(project)

    if set_:
        patch: dict = {}
        for item in set_:
            key, sep, value = item.partition("=")
            if not sep or not key.strip():
                console.print(f"[red]Expected key=value, got {item!r}[/red]")
                raise typer.Exit(1)
            node = patch
            *parents, leaf = key.strip().split(".")
            for part in parents:
                node = node.setdefault(part, {})
            node[leaf] = _parse_setting(value)
        try:
            update_settings(paths.settings_file, patch)
        except CadenceError as e:
            console.print(f"[red]{e.message}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]Updated {paths.settings_file}[/green]")

    try:
        effective = CadenceConfig.load(paths.settings_file)
    except CadenceError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]Settings file:[/bold] {paths.settings_file}")
    if not paths.settings_file.exists():
        console.print("[dim]Not found. Defaults shown; 'cadence start' writes them.[/dim]")
    console.print(Panel(
        JSON(json.dumps(effective.model_dump(mode="json", by_alias=True))),
        title="effective settings",
        border_style="dim",
    ))


def _parse_setting(raw: str):
    # JSON values (numbers, booleans, lists) as-is, anything else as a plain string
    try:
        return json.loads(raw)
    except ValueError:
        return raw


@app.command()
def version() -> None:
    """Show Cadence version."""
    from cadence import __version__

    console.print(f"Cadence v{__version__}")


if __name__ == "__main__":
    app()
