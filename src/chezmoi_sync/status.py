"""The status reporter: a read-only view over the daemon's persisted state."""

import datetime
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import service
from .config import Config
from .constants import (
    CONFIG_FILE,
    DIRECTIONS,
    MACHINE_ID_FILE,
    STATE_DIR,
    STATUS_DEGRADED,
    STATUS_DEV_MODE,
    STATUS_HEALTHY,
    STATUS_STICKY_ERROR,
    pid_file,
)
from .devmode import DevModeGate
from .interlock import Holder, read_holder
from .state import RunLedger, RunRecord

console = Console()

_TOPOLOGIES = ("all", *DIRECTIONS)


@dataclass
class StatusReport:
    """Snapshot of everything the status command prints.

    Attributes:
        config (Config): The effective configuration.
        records (dict[str, RunRecord]): Run record per direction.
        dev_mode (bool): Whether the dev-mode gate is engaged.
        services (dict[str, bool]): Service-manager state per direction.
        running (dict[str, int]): Live daemon PIDs keyed by topology.
        holder (Holder | None): Current interlock holder.
        machine_id (str | None): The stored identity token.
        now (float): Unix time the snapshot was taken.
    """

    config: Config
    records: dict[str, RunRecord]
    dev_mode: bool
    services: dict[str, bool] = field(default_factory=dict)
    running: dict[str, int] = field(default_factory=dict)
    holder: Holder | None = None
    machine_id: str | None = None
    now: float = field(default_factory=time.time)


def _live_pid(path: Path) -> int | None:
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def collect(config: Config | None = None) -> StatusReport:
    """Gathers the status snapshot from disk and the service manager."""
    config = config or Config.load()
    running = {}
    for topology in _TOPOLOGIES:
        if pid := _live_pid(pid_file(topology)):
            running[topology] = pid

    try:
        machine_id = MACHINE_ID_FILE.read_text().strip() or None
    except OSError:
        machine_id = None

    return StatusReport(
        config=config,
        records={d: RunLedger(d).load() for d in DIRECTIONS},
        dev_mode=DevModeGate().is_enabled(),
        services=service.is_service_enabled(),
        running=running,
        holder=read_holder(),
        machine_id=machine_id,
    )


def exit_code(report: StatusReport) -> int:
    """Maps a snapshot to the status exit code.

    Returns:
        int: 2 if any direction carries a sticky error, 1 if dev-mode is on,
        3 if either direction is failing or pull has not succeeded within two
        pull intervals, 0 otherwise.
    """
    if any(r.sticky for r in report.records.values()):
        return STATUS_STICKY_ERROR
    if report.dev_mode:
        return STATUS_DEV_MODE

    pull = report.records["pull"]
    horizon = 2 * report.config.pull_interval
    if pull.last_success is None or report.now - pull.last_success > horizon:
        return STATUS_DEGRADED
    if any(r.last_failed for r in report.records.values()):
        return STATUS_DEGRADED
    return STATUS_HEALTHY


def _when(ts: float | None) -> str:
    if ts is None:
        return "never"
    return datetime.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _records_table(report: StatusReport) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Direction", style="cyan")
    table.add_column("Last Outcome")
    table.add_column("Last Attempt", style="dim")
    table.add_column("Last Success")
    table.add_column("Attempts", justify="right")
    table.add_column("Last Error")

    for direction, rec in report.records.items():
        if rec.never_run:
            table.add_row(direction, "[dim]never run[/dim]", "-", "-", "0", "")
            continue

        style = "red" if rec.last_failed else "green"
        if rec.last_outcome and rec.last_outcome.startswith("Skipped"):
            style = "yellow"
        error = ""
        if rec.last_error_kind:
            error = f"{rec.last_error_kind}: {rec.last_error_message}"
            if rec.sticky:
                error = f"[bold red]STICKY[/bold red] {error}"
        table.add_row(
            direction,
            f"[{style}]{rec.last_outcome}[/{style}]",
            _when(rec.last_attempt),
            _when(rec.last_success),
            str(rec.attempts),
            error,
        )
    return table


def render(report: StatusReport) -> None:
    """Prints the report to the console."""
    content = Text()

    content.append("Daemon:     ", style="bold")
    if report.running:
        pids = ", ".join(f"{t} (pid {p})" for t, p in report.running.items())
        content.append(f"Running {pids}\n", style="bold green")
    else:
        content.append("Not running\n", style="bold red")

    content.append("Services:   ", style="bold")
    for direction in DIRECTIONS:
        enabled = report.services.get(direction, False)
        content.append(
            f"{direction} {'enabled' if enabled else 'disabled'}  ",
            style="green" if enabled else "yellow",
        )
    content.append("\n")

    content.append("Dev-mode:   ", style="bold")
    if report.dev_mode:
        content.append("ON (automatic sync suspended)\n", style="bold yellow")
    else:
        content.append("off\n", style="green")

    content.append("Interlock:  ", style="bold")
    if report.holder:
        content.append(
            f"held by {report.holder.direction} (pid {report.holder.pid}) "
            f"since {_when(report.holder.acquired_at)}\n",
            style="yellow",
        )
    else:
        content.append("free\n", style="dim")

    content.append("Machine ID: ", style="bold")
    content.append(f"{report.machine_id or 'not yet assigned'}\n")

    console.print(Panel(content, title="Chezmoi Sync System Status", expand=False))
    console.print(_records_table(report))

    paths = Text()
    paths.append(f"Config:    {report.config.source or CONFIG_FILE}\n")
    paths.append(f"Source:    {report.config.watch_path}\n")
    paths.append(f"Logs:      {report.config.log_dir}\n")
    paths.append(f"State:     {STATE_DIR}\n")
    paths.append(
        f"Upstream:  {report.config.remote_name}/{report.config.branch_name}",
        style="dim",
    )
    console.print(Panel(paths, title="Paths", expand=False))


def show_status(config: Config | None = None) -> int:
    """Collects, prints and scores the status report.

    Returns:
        int: The status exit code.
    """
    report = collect(config)
    render(report)
    return exit_code(report)
