import argparse
import atexit
import logging
import os
import shutil
import signal
import sys
import threading
import time
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from rich.console import Console

from .chezmoi_wrapper import ChezmoiRepo
from .config import Config
from .constants import (
    APP_NAME,
    DIRECTIONS,
    EXIT_CONFIG,
    EXIT_OK,
    EXIT_TOOL_MISSING,
    pid_file,
)
from .controllers import PullController, PushController
from .devmode import DevModeGate
from .interlock import Interlock
from .ops import SyncContext
from .outcomes import ConfigError, ToolMissingError
from .state import RunLedger
from .system import ensure_identity, get_system
from .watcher import MergeMarker, Watcher

logger = logging.getLogger(APP_NAME)

err_console = Console(stderr=True)

REQUIRED_TOOLS = ("git", "chezmoi")

_FORMATTER = logging.Formatter(
    "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
)


def setup_logging(
    config: Config,
    interactive: bool,
    directions: tuple[str, ...] = DIRECTIONS,
) -> None:
    """Configures the logging subsystem.

    Args:
        config (Config): Supplies LOG_DIR, LOG_LEVEL and MAX_LOG_SIZE.
        interactive (bool): If True, logs to stdout only. If False, logs to
            stderr plus rotated `<direction>.log` / `<direction>.error.log`
            files in LOG_DIR.
        directions (tuple[str, ...]): Directions that get log files.
    """
    logger.setLevel(getattr(logging, config.log_level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stdout if interactive else sys.stderr)
    stream_handler.setFormatter(_FORMATTER)
    logger.addHandler(stream_handler)

    if interactive:
        return

    config.log_dir.mkdir(parents=True, exist_ok=True)
    for direction in directions:
        child = logging.getLogger(f"{APP_NAME}.{direction}")
        for handler in list(child.handlers):
            child.removeHandler(handler)
            handler.close()
        for suffix, level in (("log", logging.NOTSET), ("error.log", logging.ERROR)):
            file_handler = RotatingFileHandler(
                config.log_dir / f"{direction}.{suffix}",
                maxBytes=config.max_log_size,
                backupCount=5,
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(_FORMATTER)
            child.addHandler(file_handler)


def check_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Raises ToolMissingError for the first required executable not on PATH."""
    for tool in tools:
        if not shutil.which(tool):
            raise ToolMissingError(tool)


def build_context(
    config: Config, cancel_event: threading.Event | None = None
) -> SyncContext:
    """Creates the adapter and the rest of the sync context.

    Raises:
        ConfigError: If WATCH_PATH is not a git work tree.
    """
    try:
        repo = ChezmoiRepo(config.watch_path, cancel_event=cancel_event)
    except ValueError as e:
        raise ConfigError([f"WATCH_PATH: {e}"]) from e
    return SyncContext(
        config=config,
        repo=repo,
        gate=DevModeGate(),
        machine_id=ensure_identity(),
        system=get_system(),
        merging=MergeMarker().hold,
    )


class Daemon:
    """Runs the push reactor and/or the pull timer until asked to stop.

    Shutdown is cooperative: the controllers stop taking new work, in-flight
    pipelines get SHUTDOWN_GRACE_SECONDS to finish, after which pending
    adapter calls are cancelled and child processes terminated.
    """

    def __init__(
        self,
        ctx: SyncContext,
        directions: tuple[str, ...] = DIRECTIONS,
        interlock: Interlock | None = None,
        cancel_event: threading.Event | None = None,
        watcher: Watcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.clock = clock
        self.directions = directions
        self.interlock = interlock or Interlock()
        self.stop_event = threading.Event()
        self.cancel_event = cancel_event or threading.Event()
        self.watcher: Watcher | None = None
        self.push: PushController | None = None
        self.pull: PullController | None = None

        if "push" in directions:
            self.watcher = watcher or Watcher(
                ctx.config.watch_path, marker=MergeMarker()
            )
            self.push = PushController(
                ctx, self.interlock, RunLedger("push"), self.watcher, self.stop_event
            )
        if "pull" in directions:
            self.pull = PullController(
                ctx, self.interlock, RunLedger("pull"), self.stop_event
            )

    @property
    def controllers(self) -> list[PushController | PullController]:
        return [c for c in (self.push, self.pull) if c is not None]

    def start(self) -> None:
        if self.watcher:
            self.watcher.start()
        for controller in self.controllers:
            controller.start()
        logger.info(
            f"{APP_NAME} daemon running ({', '.join(self.directions)}) "
            f"as '{self.ctx.machine_id}'."
        )

    def request_stop(self) -> None:
        """Signals both controllers to stop taking new work."""
        if not self.stop_event.is_set():
            logger.info("Shutdown requested.")
            self.stop_event.set()

    def shutdown(self) -> None:
        """Waits out the grace period, then cancels and terminates stragglers."""
        self.request_stop()
        grace = self.ctx.config.shutdown_grace
        deadline = self.clock() + grace
        finished = True
        for controller in self.controllers:
            remaining = max(0.0, deadline - self.clock())
            finished = controller.join(remaining) and finished
        if not finished:
            logger.warning(f"Grace period ({grace}s) expired; terminating pipelines.")
            self.cancel_event.set()
            self.ctx.repo.terminate_children()
            for controller in self.controllers:
                controller.join(5)
        if self.watcher:
            self.watcher.close()
        logger.info("Daemon stopped.")

    def install_signal_handlers(self) -> None:
        def _handler(signum: int, _frame: FrameType | None) -> None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def run_forever(self) -> None:
        """Starts the controllers and blocks until a stop is requested."""
        self.install_signal_handlers()
        self.start()
        try:
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()


def _write_pid(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(os.getpid()))
        atexit.register(lambda: path.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def main(argv: list[str] | None = None) -> int:
    """Entry point of `chezmoi-sync-daemon`.

    Returns:
        int: 0 on normal shutdown, 78 on configuration errors, 127 when git or
        chezmoi is missing.
    """
    parser = argparse.ArgumentParser(
        prog="chezmoi-sync-daemon", description="chezmoi-sync background daemon"
    )
    parser.add_argument(
        "--only",
        choices=DIRECTIONS,
        help="Run a single direction (two-service deployment)",
    )
    parser.add_argument("--config", type=Path, help="Path to chezmoi-sync.conf")
    args = parser.parse_args(argv)

    directions = (args.only,) if args.only else DIRECTIONS

    try:
        config = Config.load(args.config)
        check_tools()
        cancel_event = threading.Event()
        ctx = build_context(config, cancel_event)
    except ConfigError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] Invalid configuration: {e}")
        return EXIT_CONFIG
    except ToolMissingError as e:
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        return EXIT_TOOL_MISSING

    setup_logging(config, interactive=False, directions=directions)
    _write_pid(pid_file(args.only or "all"))

    daemon = Daemon(ctx, directions, cancel_event=cancel_event)
    daemon.run_forever()
    return EXIT_OK


def entrypoint() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entrypoint()
