import argparse
import logging
import subprocess
import sys

from rich.console import Console
from rich.table import Table

from . import daemon, ops, service, status
from .config import Config
from .constants import APP_NAME, CONFIG_FILE, DIRECTIONS, EXIT_CONFIG, EXIT_OK
from .devmode import DevModeGate
from .interlock import Interlock
from .outcomes import ConfigError, ErrorKind, Outcome, RunResult, ToolMissingError
from .state import RunLedger

logger = logging.getLogger(APP_NAME)
console = Console()

USAGE = (
    "chezmoi-sync {status|push|pull|dev-mode|restart|stop|start|clear|log|config}"
)

MANUAL_LOCK_TIMEOUT = 60
"""int: Seconds a manual run waits for the other direction to finish."""

_EXIT_ZERO_KINDS = {ErrorKind.TRANSIENT, ErrorKind.DEFERRED_LOCAL_CHANGES}


class SyncHelpFormatter(argparse.HelpFormatter):
    """Custom help formatter grouping the subcommands into categories."""

    groups = {
        "Synchronization": ["status", "push", "pull", "clear"],
        "Development": ["dev-mode"],
        "Service": ["start", "stop", "restart", "install-service", "uninstall-service"],
        "Diagnostics": ["log", "config"],
        "General": ["help"],
    }

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []
            subactions = list(self._iter_indented_subactions(action))

            for group_name, commands in self.groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                parts.append(f"\n  {group_name}:\n")
                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


class SyncArgumentParser(argparse.ArgumentParser):
    """Prints the usage line and exits 1 on any unrecognised input."""

    def error(self, message: str) -> None:
        console.print(f"Usage: {USAGE}", highlight=False, soft_wrap=True)
        console.print(f"[red]{message}[/red]")
        sys.exit(1)


def _report_result(direction: str, result: RunResult) -> int:
    """Prints a manual run's outcome and maps it to an exit code.

    Returns:
        int: 0 on success, skips, deferrals and transient errors; 1 on the
        first non-transient error.
    """
    outcome = result.outcome
    detail = f" {result.message}" if result.message else ""

    if outcome is Outcome.OK:
        commit = f" ({result.commit_id[:12]})" if result.commit_id else ""
        console.print(
            f"[bold green]✔ {direction.title()} complete{commit}.[/bold green]"
        )
        if result.skipped_paths:
            console.print(
                f"[yellow]chezmoi skipped: {', '.join(result.skipped_paths)}[/yellow]"
            )
        return EXIT_OK

    kind = result.error_kind
    if kind is None or kind in _EXIT_ZERO_KINDS:
        console.print(f"[yellow]{outcome.value}.{detail}[/yellow]")
        if outcome is Outcome.SKIPPED_DEV_MODE:
            console.print("[dim]Use --force to run anyway.[/dim]")
        return EXIT_OK

    console.print(f"[bold red]✘ {outcome.value}:[/bold red]{detail}")
    return 1


def run_manual(direction: str, force: bool = False) -> int:
    """Runs one pipeline synchronously on behalf of the operator.

    Manual runs ignore a pending sticky error of their direction (and clear it
    on success). They honour dev-mode unless `force` is set.

    Args:
        direction (str): 'push' or 'pull'.
        force (bool): Bypass the dev-mode gate.

    Returns:
        int: The process exit code.
    """
    try:
        config = Config.load()
        daemon.check_tools()
        ctx = daemon.build_context(config)
    except ConfigError as e:
        console.print(f"[bold red]FATAL:[/bold red] Invalid configuration: {e}")
        return e.exit_code
    except ToolMissingError as e:
        console.print(f"[bold red]FATAL:[/bold red] {e}")
        return e.exit_code

    daemon.setup_logging(config, interactive=True)

    with console.status(f"Running {direction}...", spinner="dots"):
        result = ops.run_direction(
            direction,
            ctx,
            Interlock(),
            RunLedger(direction),
            timeout=MANUAL_LOCK_TIMEOUT,
            automated=False,
            bypass_dev_mode=force,
        )
    return _report_result(direction, result)


def dev_mode(state: str | None, gate: DevModeGate | None = None) -> int:
    """Shows or changes the dev-mode flag.

    Args:
        state (str | None): 'on', 'off', 'toggle', or None to show the state.
        gate (DevModeGate | None): The gate to operate on.
    """
    gate = gate or DevModeGate()
    if state == "on":
        gate.set(True)
    elif state == "off":
        gate.set(False)
    elif state == "toggle":
        gate.toggle()

    if gate.is_enabled():
        console.print(
            "Dev-mode [bold yellow]ON[/bold yellow]: automatic sync suspended.\n"
            "[dim]Run 'chezmoi-sync dev-mode off' to resume.[/dim]"
        )
    else:
        console.print("Dev-mode [bold green]OFF[/bold green]: automatic sync active.")
    return EXIT_OK


def clear_sticky(direction: str | None) -> int:
    """Clears sticky errors for one or both directions."""
    for d in (direction,) if direction else DIRECTIONS:
        rec = RunLedger(d).clear_sticky()
        console.print(f"{d}: cleared (last outcome: {rec.last_outcome or 'never run'})")
    return EXIT_OK


def tail_log(direction: str, errors: bool = False) -> int:
    """Follows a daemon log file in real-time."""
    try:
        config = Config.load()
    except ConfigError as e:
        console.print(f"[bold red]FATAL:[/bold red] Invalid configuration: {e}")
        return EXIT_CONFIG

    log_file = config.log_dir / f"{direction}.{'error.log' if errors else 'log'}"
    if not log_file.exists():
        console.print(f"[red]No log file found yet at {log_file}.[/red]")
        return 1

    console.print(f"Tailing [bold cyan]{log_file}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "200", "-f", str(log_file)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")
    return EXIT_OK


def show_config() -> int:
    """Prints the effective configuration."""
    try:
        config = Config.load()
    except ConfigError as e:
        console.print(f"[bold red]FATAL:[/bold red] Invalid configuration: {e}")
        return EXIT_CONFIG

    table = Table(title=f"Effective configuration ({config.source or 'defaults'})")
    table.add_column("Key", style="green")
    table.add_column("Value", style="yellow")
    for key, value in config.as_dict().items():
        table.add_row(key, value.replace("\n", "\\n"))
    console.print(table)
    if config.source is None:
        console.print(f"[dim]No config file at {CONFIG_FILE}.[/dim]")
    return EXIT_OK


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="Chezmoi Sync Configuration Schema", show_lines=True)
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row("LOG_DIR", "path", "<state>/logs", "Directory for push/pull logs.")
    table.add_row(
        "PULL_INTERVAL_SECONDS",
        "int | str",
        "300",
        "Seconds between pull ticks (e.g. '300', '5m').",
    )
    table.add_row(
        "PUSH_DEBOUNCE_SECONDS",
        "int | str",
        "5",
        "Quiet period before pushing local edits; 0 pushes eagerly.",
    )
    table.add_row(
        "COMMIT_MESSAGE_TEMPLATE",
        "str",
        '"chezmoi-sync({machine}): ..."',
        "Placeholders: {machine}, {timestamp}, {files}.",
    )
    table.add_row("REMOTE_NAME", "str", '"origin"', "Upstream remote.")
    table.add_row("BRANCH_NAME", "str", '"main"', "Upstream branch.")
    table.add_row(
        "WATCH_PATH", "path", "~/.local/share/chezmoi", "chezmoi source directory."
    )
    table.add_row(
        "AUTO_RESOLVE",
        "bool",
        "true",
        "true: fast-forward-only pulls. false: merge upstream changes.",
    )
    table.add_row(
        "MERGE_STRATEGY_OPTION",
        "str",
        '""',
        "Passed as -X to the merge when AUTO_RESOLVE=false (e.g. 'theirs').",
    )
    table.add_row(
        "VERIFY_APPLY_AFTER_PUSH",
        "bool",
        "false",
        "Run 'chezmoi apply' after each successful push.",
    )
    table.add_row(
        "NOTIFICATIONS", "bool", "true", "Desktop notification on sticky errors."
    )
    table.add_row("LOG_LEVEL", "str", '"INFO"', "DEBUG, INFO, WARNING or ERROR.")
    table.add_row(
        "MAX_LOG_SIZE",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )
    table.add_row(
        "SHUTDOWN_GRACE_SECONDS",
        "int | str",
        "10",
        "Time in-flight pipelines get to finish on shutdown.",
    )

    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = SyncArgumentParser(
        prog="chezmoi-sync",
        usage=USAGE,
        formatter_class=SyncHelpFormatter,
        add_help=False,
    )
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help=argparse.SUPPRESS,
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", aliases=["st"], help="Show sync health")

    for direction in DIRECTIONS:
        p = subparsers.add_parser(direction, help=f"Run one {direction} now")
        p.add_argument(
            "--force", "-f", action="store_true", help="Run even in dev-mode"
        )

    dev_parser = subparsers.add_parser(
        "dev-mode", aliases=["dev"], help="Suspend or resume automatic sync"
    )
    dev_parser.add_argument(
        "state", nargs="?", choices=["on", "off", "toggle"], help="New state"
    )

    clear_parser = subparsers.add_parser("clear", help="Clear sticky errors")
    clear_parser.add_argument("direction", nargs="?", choices=DIRECTIONS)

    for action in service.ACTIONS:
        subparsers.add_parser(action, help=f"{action.title()} both services")
    subparsers.add_parser("install-service", help="Install the background services")
    subparsers.add_parser("uninstall-service", help="Remove the background services")

    log_parser = subparsers.add_parser("log", help="Tail a daemon log file")
    log_parser.add_argument(
        "direction", nargs="?", choices=DIRECTIONS, default="push"
    )
    log_parser.add_argument(
        "--errors", "-e", action="store_true", help="Tail the error log"
    )

    config_parser = subparsers.add_parser(
        "config", help="Show the effective configuration or the options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    subparsers.add_parser("help", help="Show this help message")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the chezmoi-sync CLI.

    Returns:
        int: The process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "status"

    if command in ("status", "st"):
        try:
            return status.show_status()
        except ConfigError as e:
            console.print(f"[bold red]FATAL:[/bold red] Invalid configuration: {e}")
            return EXIT_CONFIG
    elif command in DIRECTIONS:
        return run_manual(command, force=args.force)
    elif command in ("dev-mode", "dev"):
        return dev_mode(args.state)
    elif command == "clear":
        return clear_sticky(args.direction)
    elif command in service.ACTIONS:
        return service.control(command)
    elif command == "install-service":
        with console.status("Installing background services...", spinner="dots"):
            service.install()
        return EXIT_OK
    elif command == "uninstall-service":
        with console.status("Uninstalling services...", spinner="dots"):
            service.uninstall()
        return EXIT_OK
    elif command == "log":
        return tail_log(args.direction, args.errors)
    elif command == "config":
        if args.list:
            show_config_reference()
            return EXIT_OK
        return show_config()
    elif command == "help":
        parser.print_help()
        return EXIT_OK

    parser.error(f"unknown command: {command}")
    return 1


def entrypoint() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entrypoint()
