import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .config import Config
from .constants import (
    APP_NAME,
    BREW_SERVICES,
    DIRECTIONS,
    EXIT_TOOL_MISSING,
    PULL_LABEL,
    PUSH_LABEL,
    SYSTEMD_UNITS,
)

console = Console()

ACTIONS = ("start", "stop", "restart")


def get_executable() -> str:
    """Locates the installed daemon executable in the system path.

    Returns:
        str: The absolute path to the 'chezmoi-sync-daemon' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which("chezmoi-sync-daemon")
    if not exe:
        console.print(
            "[bold red]ERROR:[/bold red] Could not find 'chezmoi-sync-daemon'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def unit_dir() -> Path:
    return Path.home() / ".config/systemd/user"


def _service_commands(action: str) -> list[list[str]]:
    """Builds the service-manager invocations for one lifecycle action."""
    if sys.platform == "darwin":
        return [["brew", "services", action, name] for name in BREW_SERVICES]
    return [["systemctl", "--user", action, *SYSTEMD_UNITS]]


def control(action: str) -> int:
    """Asks the host service manager to start/stop/restart both daemons.

    Args:
        action (str): One of 'start', 'stop' or 'restart'.

    Returns:
        int: The first non-zero exit status of the service manager, or 0.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown service action: {action}")

    status = 0
    for cmd in _service_commands(action):
        try:
            proc = subprocess.run(cmd)
        except FileNotFoundError:
            console.print(f"[bold red]ERROR:[/bold red] '{cmd[0]}' not found.")
            return EXIT_TOOL_MISSING
        if proc.returncode != 0 and status == 0:
            status = proc.returncode
    return status


def is_service_enabled() -> dict[str, bool]:
    """Reports, per direction, whether the host service manager runs it."""
    if sys.platform == "darwin":
        checks = [["launchctl", "list", label] for label in (PUSH_LABEL, PULL_LABEL)]
    else:
        checks = [["systemctl", "--user", "is-active", unit] for unit in SYSTEMD_UNITS]

    enabled = {}
    for direction, cmd in zip(DIRECTIONS, checks):
        try:
            proc = subprocess.run(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
            enabled[direction] = proc.returncode == 0
        except FileNotFoundError:
            enabled[direction] = False
    return enabled


def render_units(executable: str, config: Config) -> dict[str, str]:
    """Renders the push and pull systemd user units.

    The push daemon restarts no sooner than the debounce window; the pull
    daemon schedules its own ticks every PULL_INTERVAL_SECONDS. Both get a
    minimal environment containing only PATH.

    Args:
        executable (str): Path to 'chezmoi-sync-daemon'.
        config (Config): Supplies the debounce window and watch path.

    Returns:
        dict[str, str]: Unit file name to unit content.
    """
    search = [str(Path(executable).parent), "/usr/local/bin", "/usr/bin", "/bin"]
    path_env = ":".join(dict.fromkeys(search))
    push_unit, pull_unit = SYSTEMD_UNITS
    return {
        push_unit: f"""[Unit]
Description={APP_NAME} push daemon (watches {config.watch_path})

[Service]
ExecStart={executable} --only push
Environment=PATH={path_env}
Restart=on-failure
RestartSec={max(config.push_debounce, 1)}

[Install]
WantedBy=default.target
""",
        pull_unit: f"""[Unit]
Description={APP_NAME} pull daemon (every {config.pull_interval}s)

[Service]
ExecStart={executable} --only pull
Environment=PATH={path_env}
Restart=on-failure
RestartSec=30

[Install]
WantedBy=default.target
""",
    }


def install_linux(base_dir: Path, executable: str, config: Config) -> None:
    """Writes and enables the two systemd user units.

    Args:
        base_dir (Path): The systemd user unit directory.
        executable (str): The path to the daemon executable.
        config (Config): The effective configuration.
    """
    base_dir.mkdir(parents=True, exist_ok=True)
    for name, content in render_units(executable, config).items():
        (base_dir / name).write_text(content)

    subprocess.run(["systemctl", "--user", "daemon-reload"], check=True)
    subprocess.run(
        ["systemctl", "--user", "enable", "--now", *SYSTEMD_UNITS], check=True
    )
    console.print(
        f"[bold green]SUCCESS:[/bold green] {APP_NAME} systemd units active.\n"
        f"Check status: systemctl --user status {' '.join(SYSTEMD_UNITS)}"
    )


def _brew_note(action: str) -> None:
    console.print(
        "\n[bold yellow]NOTE:[/bold yellow] On macOS, the background services "
        "are managed by Homebrew."
    )
    console.print(f"To {action} them, run:")
    for name in BREW_SERVICES:
        console.print(f"   [green]brew services {action} {name}[/green]")
    console.print()


def install(config: Config | None = None) -> None:
    """Installs the background services.

    On Linux, this generates systemd user units. On macOS, it instructs the user
    to use Homebrew services.
    """
    if sys.platform == "darwin":
        _brew_note("start")
        return

    config = config or Config.load()
    exe = get_executable()
    console.print(
        f"Installing background services (debounce: {config.push_debounce}s, "
        f"pull interval: {config.pull_interval}s)..."
    )
    install_linux(unit_dir(), exe, config)


def uninstall() -> None:
    """Removes the background services."""
    if sys.platform == "darwin":
        _brew_note("stop")
        return

    subprocess.run(
        ["systemctl", "--user", "disable", "--now", *SYSTEMD_UNITS],
        stderr=subprocess.DEVNULL,
    )
    for name in SYSTEMD_UNITS:
        (unit_dir() / name).unlink(missing_ok=True)
    subprocess.run(["systemctl", "--user", "daemon-reload"])

    console.print("[bold green]SUCCESS:[/bold green] Services uninstalled.")
